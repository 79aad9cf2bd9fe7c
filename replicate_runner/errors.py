from __future__ import annotations


class RunnerError(Exception):
    """Fatal job failure carrying the error code reported to the host."""

    def __init__(self, code: str, description: str) -> None:
        super().__init__(description)
        self.code = code
        self.description = description

    def __repr__(self) -> str:
        return f"RunnerError(code={self.code!r}, description={self.description!r})"
