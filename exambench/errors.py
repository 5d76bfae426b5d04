"""Exception taxonomy for the benchmark harness."""

from __future__ import annotations

from typing import Any, Optional


class ExamBenchError(Exception):
    """Base class for all harness errors."""


class ClientError(ExamBenchError):
    """A request to the model server failed."""

    def __init__(self, message: str, *, status: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class ConnectivityError(ClientError):
    """Server unreachable, or model listing returned a non-2xx status."""


class RequestTimeout(ClientError):
    """The binding's request timeout elapsed before the server answered."""


class JsonModeUnsupported(ClientError):
    """Neither json_object nor json_schema response formats were accepted."""


class ModelLoadError(ClientError):
    """The server could not find or load the requested model."""


class CompletionError(ClientError):
    """Any other non-2xx or malformed chat-completion response."""


class ParseError(ExamBenchError):
    """Completion text was not valid JSON. Recovered locally by the parser."""


class TemplateError(ExamBenchError):
    """A step prompt template references an unsupported token."""


class DatasetError(ExamBenchError):
    """Question bank, catalog, or profile file could not be loaded."""


class RunCancelled(ExamBenchError):
    """The run's cancellation event was set."""
