from __future__ import annotations

from typing import Optional

from pydantic import TypeAdapter

from ..contracts import RunResult

_RESULT_ADAPTER: TypeAdapter = TypeAdapter(RunResult)


def dump_result(result: Optional[RunResult]) -> Optional[str]:
    if result is None:
        return None
    return result.model_dump_json()


def load_result(raw: Optional[str]) -> Optional[RunResult]:
    if not raw:
        return None
    return _RESULT_ADAPTER.validate_json(raw)
