from __future__ import annotations


class LineAssembler:
    """Reassemble complete lines from sanitized chunks of one stream."""

    def __init__(self) -> None:
        self._carry = ""

    @property
    def pending(self) -> str:
        return self._carry

    def feed(self, chunk: str) -> list[str]:
        parts = (self._carry + chunk).split("\n")
        self._carry = parts.pop()
        return parts

    def flush(self) -> list[str]:
        carry, self._carry = self._carry, ""
        return [carry] if carry else []
