"""
Job runner: reads one job from stdin, drives a Replicate prediction to
completion and reports progress and the result as JSON lines on stdout.
"""
from __future__ import annotations

import asyncio
import functools
import json
import os
import sys
import time
from typing import Any, Awaitable, Callable, Mapping

import httpx
from loguru import logger
from pydantic import ValidationError

from .client import ReplicateClient
from .errors import RunnerError
from .files import FileResolver, upload_input_file
from .inputs import build_input, parse_number
from .outputs import collect_urls, download_outputs
from .poller import wait_for_completion
from .reporter import Reporter
from .types import API_BASE, Job, Prediction, PredictionSummary, RunnerConfig

DEFAULT_WAIT_SECONDS = 5
DEFAULT_POLL_INTERVAL_MS = 1000
DEFAULT_TIMEOUT_MS = 300000


def configure_logging(level: str | None = None) -> None:
    # stdout carries the host protocol, so logs go to stderr
    logger.remove()
    logger.add(sys.stderr, level=level or os.getenv("LOG_LEVEL", "INFO"))


def parse_job(raw: str) -> Job:
    text = (raw or "").strip()
    if not text:
        raise RunnerError("input", "No JSON input received on STDIN.")
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise RunnerError("input", f"Failed to parse JSON input: {exc}") from exc
    if not isinstance(document, dict):
        raise RunnerError("input", "Job input must be a JSON object.")
    try:
        return Job.model_validate(document)
    except ValidationError as exc:
        raise RunnerError("input", f"Invalid job input: {exc}") from exc


def _load_config(params: Mapping[str, Any], env: Mapping[str, str]) -> RunnerConfig:
    api_token = env.get("REPLICATE_API_TOKEN")
    if not api_token:
        raise RunnerError("env", "Missing Replicate API token. Set REPLICATE_API_TOKEN.")

    model = str(params.get("model") or "").strip()
    if not model:
        raise RunnerError("params", "Required parameter 'model' was not provided.")

    prompt = str(params.get("prompt") or "").strip()
    if not prompt:
        raise RunnerError("params", "Required parameter 'prompt' was not provided.")

    wait_seconds = parse_number(params.get("wait_seconds"), DEFAULT_WAIT_SECONDS)
    poll_interval_ms = parse_number(params.get("poll_interval_ms"), DEFAULT_POLL_INTERVAL_MS)
    timeout_ms = parse_number(params.get("timeout_ms"), DEFAULT_TIMEOUT_MS)
    cancel_after = str(params.get("cancel_after") or "").strip()

    return RunnerConfig(
        api_token=api_token,
        api_base=env.get("REPLICATE_API_BASE") or API_BASE,
        tool=str(params.get("tool") or "image"),
        model=model,
        prompt=prompt,
        wait_seconds=min(60, max(1, wait_seconds)),
        poll_interval=max(250, poll_interval_ms) / 1000,
        timeout=max(1000, timeout_ms) / 1000,
        cancel_after=cancel_after or None,
    )


def summarize(prediction: dict[str, Any]) -> PredictionSummary:
    record = Prediction.model_validate(prediction)
    return PredictionSummary(
        prediction_id=record.id,
        model=record.model,
        version=record.version,
        status=record.status,
        metrics=record.metrics or {},
        output=record.output,
    )


async def _execute(
    job: Job,
    reporter: Reporter,
    env: Mapping[str, str],
    *,
    transport: httpx.AsyncBaseTransport | None,
    root: str,
    clock: Callable[[], float],
    sleep: Callable[[float], Awaitable[Any]],
) -> None:
    cfg = _load_config(job.params, env)
    payload = build_input({**job.params, "prompt": cfg.prompt}, cfg.tool)
    logger.info("job accepted", tool=cfg.tool, model=cfg.model)

    reporter.progress(0.05)

    client = ReplicateClient(cfg.api_token, base_url=cfg.api_base, transport=transport)
    try:
        resolver = FileResolver(
            job.input_filenames(),
            functools.partial(upload_input_file, client, root=root),
            root=root,
        )
        payload = await resolver.resolve(payload)

        prediction = await client.create_prediction(
            cfg.model,
            payload,
            wait_seconds=cfg.wait_seconds,
            cancel_after=cfg.cancel_after,
        )
        if isinstance(prediction, dict):
            logger.info("prediction created", prediction_id=prediction.get("id"))

        reporter.progress(0.1)

        final = await wait_for_completion(
            prediction,
            client,
            reporter,
            tool=cfg.tool,
            poll_interval=cfg.poll_interval,
            timeout=cfg.timeout,
            clock=clock,
            sleep=sleep,
        )

        urls = collect_urls(final.get("output") or [])
        if not urls:
            raise RunnerError("output", "Prediction succeeded but returned no output URLs.")

        reporter.progress(0.9)

        files = await download_outputs(client, urls, f"replicate-{final.get('id')}", dest=root)
    finally:
        await client.close()

    reporter.complete(summarize(final), files)
    logger.info("job completed", prediction_id=final.get("id"), files=len(files))


async def run_job(
    raw: str,
    reporter: Reporter,
    *,
    env: Mapping[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    root: str = ".",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> None:
    """Run one job end to end. Always leaves exactly one terminal record behind."""
    try:
        job = parse_job(raw)
        await _execute(
            job,
            reporter,
            os.environ if env is None else env,
            transport=transport,
            root=root,
            clock=clock,
            sleep=sleep,
        )
    except RunnerError as exc:
        logger.error("job failed: {} ({})", exc.description, exc.code)
        reporter.fail(exc.code, exc.description)
    except Exception as exc:
        logger.exception("unexpected runner failure")
        reporter.fail("exception", str(exc) or exc.__class__.__name__)


def main() -> int:
    configure_logging()
    raw = sys.stdin.read()
    asyncio.run(run_job(raw, Reporter(sys.stdout)))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
