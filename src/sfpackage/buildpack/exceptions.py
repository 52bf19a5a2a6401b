from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import CommandResult, TestOutcomeSet


class PipelineError(Exception):
    pass


class ConfigurationError(PipelineError):
    pass


class CryptoError(PipelineError):
    pass


class RuntimeAcquisitionError(PipelineError):
    pass


class CredentialResolutionError(PipelineError):
    pass


class CredentialResolutionExhausted(CredentialResolutionError):
    pass


class ExternalToolError(PipelineError):
    def __init__(self, message: str, result: "CommandResult | None" = None) -> None:
        super().__init__(message)
        self.result = result


class ExternalToolParseError(PipelineError):
    pass


class EnvironmentOperationError(PipelineError):
    pass


class PackageResolutionError(PipelineError):
    def __init__(self, message: str, name: str = "", tool_message: str = "") -> None:
        if name or tool_message:
            message = f"{message}\n{name}: {tool_message}"
        super().__init__(message)
        self.name = name
        self.tool_message = tool_message


class TestsFailedError(PipelineError):
    __test__ = False

    def __init__(self, outcome: "TestOutcomeSet") -> None:
        failed = ", ".join(outcome.failed) or "<unknown>"
        super().__init__(f"{len(outcome.failed)} test(s) failed: {failed}")
        self.outcome = outcome
