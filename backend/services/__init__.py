"""Backend service clients used by the execution tracker."""

from services.task_splitting import (
    TaskSplittingAPIError,
    TaskSplittingClient,
    parse_api_error,
    parse_sse_block,
)

__all__ = [
    "TaskSplittingAPIError",
    "TaskSplittingClient",
    "parse_api_error",
    "parse_sse_block",
]
