from __future__ import annotations


class ValueBotError(Exception):
    pass


class ConfigError(ValueBotError, ValueError):
    pass


class FetchError(ValueBotError):
    pass


class CountError(ValueBotError):
    pass


class JobValidationError(ValueBotError):
    pass


class PipelineError(ValueBotError):
    pass


class CompletionError(PipelineError):
    pass


class SelectionError(PipelineError):
    pass


class NoJsonContentError(PipelineError):
    def __init__(self, message: str = "No JSON content found") -> None:
        super().__init__(message)


class JsonBlockParseError(PipelineError):
    def __init__(self, cause: Exception) -> None:
        super().__init__(f"Unable to parse JSON block: {cause}")
        self.cause = cause
