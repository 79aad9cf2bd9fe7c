from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from replicate_runner.worker import run_job

from .conftest import read_records

ENV = {"REPLICATE_API_TOKEN": "r8_test"}
API = "https://api.replicate.com/v1"


def _job(params: dict[str, Any], files: list[dict[str, Any]] | None = None) -> str:
    document: dict[str, Any] = {"params": params}
    if files is not None:
        document["input"] = {"files": files}
    return json.dumps(document)


def _fake_replicate(states: list[dict[str, Any]], requests: list[httpx.Request]) -> Callable:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        url = str(request.url)
        if request.method == "POST" and url == f"{API}/predictions":
            return httpx.Response(201, json={"id": "p1", "status": "starting", "urls": {"get": f"{API}/predictions/p1"}})
        if request.method == "POST" and url == f"{API}/files":
            return httpx.Response(201, json={"id": "f1"})
        if url == f"{API}/predictions/p1":
            return httpx.Response(200, json=states.pop(0))
        if url.startswith("https://x/"):
            return httpx.Response(200, headers={"content-type": "image/png"}, content=b"png")
        return httpx.Response(404, json={"detail": "not found"})

    return handler


@pytest.mark.asyncio
async def test_successful_run(tmp_path: Path, reporter, stream, clock) -> None:
    (tmp_path / "inputs").mkdir()
    (tmp_path / "inputs" / "ref.jpg").write_bytes(b"jpeg")
    requests: list[httpx.Request] = []
    states = [
        {"id": "p1", "status": "processing"},
        {
            "id": "p1",
            "status": "succeeded",
            "model": "owner/model",
            "version": "v1",
            "metrics": {"predict_time": 2.5},
            "output": ["https://x/a.png", "https://x/b.png"],
        },
    ]
    raw = _job(
        {
            "model": " owner/model ",
            "prompt": " a red fox ",
            "width": "512",
            "args": {"width": 64, "image": "files:ref.jpg"},
        },
        files=[{"filename": "inputs/ref.jpg"}, {"size": 3}],
    )

    await run_job(
        raw,
        reporter,
        env=ENV,
        transport=httpx.MockTransport(_fake_replicate(states, requests)),
        root=str(tmp_path),
        clock=clock,
        sleep=clock.sleep,
    )

    records = read_records(stream)
    progress = [record["progress"] for record in records if "progress" in record]
    assert progress[:2] == [0.05, 0.1]
    assert progress[-1] == 0.9
    assert all(later - earlier >= 0.05 - 1e-9 for earlier, later in zip(progress, progress[1:]))

    terminal = records[-1]
    assert terminal == {
        "xy": 1,
        "code": 0,
        "data": {
            "prediction_id": "p1",
            "model": "owner/model",
            "version": "v1",
            "status": "succeeded",
            "metrics": {"predict_time": 2.5},
            "output": ["https://x/a.png", "https://x/b.png"],
        },
        "files": ["replicate-p1-1.png", "replicate-p1-2.png"],
    }
    assert (tmp_path / "replicate-p1-2.png").read_bytes() == b"png"

    create = next(r for r in requests if r.method == "POST" and str(r.url) == f"{API}/predictions")
    body = json.loads(create.read())
    assert body == {
        "version": "owner/model",
        "input": {"width": 512, "image": f"{API}/files/f1", "prompt": "a red fox"},
    }
    assert create.headers["Prefer"] == "wait=5"
    assert "Cancel-After" not in create.headers


@pytest.mark.asyncio
async def test_failed_prediction_reports_once(tmp_path: Path, reporter, stream, clock) -> None:
    requests: list[httpx.Request] = []
    states = [{"id": "p1", "status": "failed", "error": "OOM"}]
    await run_job(
        _job({"model": "owner/model", "prompt": "p"}),
        reporter,
        env=ENV,
        transport=httpx.MockTransport(_fake_replicate(states, requests)),
        root=str(tmp_path),
        clock=clock,
        sleep=clock.sleep,
    )

    terminal = [record for record in read_records(stream) if "code" in record]
    assert terminal == [{"xy": 1, "code": "replicate_failed", "description": "OOM"}]


@pytest.mark.asyncio
async def test_timeout_reports_and_leaves_prediction(tmp_path: Path, reporter, stream, clock) -> None:
    requests: list[httpx.Request] = []
    states = [{"id": "p1", "status": "processing"} for _ in range(10)]
    await run_job(
        _job({"model": "owner/model", "prompt": "p", "timeout_ms": "2000", "cancel_after": "10m"}),
        reporter,
        env=ENV,
        transport=httpx.MockTransport(_fake_replicate(states, requests)),
        root=str(tmp_path),
        clock=clock,
        sleep=clock.sleep,
    )

    records = read_records(stream)
    assert records[-1] == {"xy": 1, "code": "timeout", "description": "Prediction timed out after 2s."}
    assert [r.method for r in requests] == ["POST", "GET", "GET", "GET"]
    assert requests[0].headers["Cancel-After"] == "10m"


@pytest.mark.asyncio
async def test_success_without_outputs(tmp_path: Path, reporter, stream, clock) -> None:
    requests: list[httpx.Request] = []
    states = [{"id": "p1", "status": "succeeded", "output": None}]
    await run_job(
        _job({"model": "owner/model", "prompt": "p"}),
        reporter,
        env=ENV,
        transport=httpx.MockTransport(_fake_replicate(states, requests)),
        root=str(tmp_path),
        clock=clock,
        sleep=clock.sleep,
    )

    assert read_records(stream)[-1]["code"] == "output"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw, env, code",
    [
        ("", ENV, "input"),
        ("{oops", ENV, "input"),
        ("[1, 2]", ENV, "input"),
        ('{"params": "nope"}', ENV, "input"),
        (_job({"model": "m", "prompt": "p"}), {}, "env"),
        (_job({"prompt": "p"}), ENV, "params"),
        (_job({"model": "m", "prompt": "   "}), ENV, "params"),
        (_job({"model": "m", "prompt": "p", "args": "{broken"}), ENV, "params"),
    ],
)
async def test_validation_failures(raw: str, env: dict, code: str, reporter, stream) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no API call expected")

    await run_job(raw, reporter, env=env, transport=httpx.MockTransport(handler))

    records = read_records(stream)
    assert len(records) == 1
    assert records[0]["code"] == code


@pytest.mark.asyncio
async def test_unexpected_exception_is_reported(tmp_path: Path, reporter, stream, clock) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p1", "status": "succeeded", "output": "https://x/a.png"})
        raise RuntimeError("disk on fire")

    await run_job(
        _job({"model": "owner/model", "prompt": "p"}),
        reporter,
        env=ENV,
        transport=httpx.MockTransport(handler),
        root=str(tmp_path),
        clock=clock,
        sleep=clock.sleep,
    )

    terminal = [record for record in read_records(stream) if "code" in record]
    assert terminal == [{"xy": 1, "code": "exception", "description": "disk on fire"}]


@pytest.mark.asyncio
async def test_long_run_progress_steps(tmp_path: Path, reporter, stream, clock) -> None:
    requests: list[httpx.Request] = []
    states = [{"id": "p1", "status": "processing"} for _ in range(60)]
    states.append({"id": "p1", "status": "succeeded", "output": "https://x/a.png"})
    await run_job(
        _job({"model": "owner/model", "prompt": "p"}),
        reporter,
        env=ENV,
        transport=httpx.MockTransport(_fake_replicate(states, requests)),
        root=str(tmp_path),
        clock=clock,
        sleep=clock.sleep,
    )

    records = read_records(stream)
    progress = [record["progress"] for record in records if "progress" in record]
    assert progress[:2] == [0.05, 0.1]
    assert progress[-1] == 0.9
    assert len(progress) == len(set(progress))
    assert all(later - earlier >= 0.05 - 1e-9 for earlier, later in zip(progress, progress[1:]))
    assert records[-1]["code"] == 0


@pytest.mark.asyncio
async def test_unusual_prediction_fields_pass_through(tmp_path: Path, reporter, stream, clock) -> None:
    requests: list[httpx.Request] = []
    states = [
        {
            "id": "p1",
            "status": "succeeded",
            "model": {"owner": "acme"},
            "version": 7,
            "metrics": [1],
            "output": "https://x/a.png",
        }
    ]
    await run_job(
        _job({"model": "owner/model", "prompt": "p"}),
        reporter,
        env=ENV,
        transport=httpx.MockTransport(_fake_replicate(states, requests)),
        root=str(tmp_path),
        clock=clock,
        sleep=clock.sleep,
    )

    terminal = read_records(stream)[-1]
    assert terminal["code"] == 0
    assert terminal["data"]["metrics"] == [1]
    assert terminal["data"]["model"] == {"owner": "acme"}
    assert terminal["data"]["version"] == 7
    assert terminal["files"] == ["replicate-p1-1.png"]


@pytest.mark.asyncio
async def test_oversized_numbers_are_ignored(tmp_path: Path, reporter, stream, clock) -> None:
    requests: list[httpx.Request] = []
    states = [{"id": "p1", "status": "succeeded", "output": "https://x/a.png"}]
    huge = int("1" + "0" * 400)
    await run_job(
        _job({"model": "owner/model", "prompt": "p", "width": huge, "timeout_ms": huge}),
        reporter,
        env=ENV,
        transport=httpx.MockTransport(_fake_replicate(states, requests)),
        root=str(tmp_path),
        clock=clock,
        sleep=clock.sleep,
    )

    assert read_records(stream)[-1]["code"] == 0
    body = json.loads(requests[0].read())
    assert "width" not in body["input"]
