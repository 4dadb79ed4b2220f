"""
Pipeline Errors
===============
Exception taxonomy shared by every stage.

    PipelineError
    ├── ConfigurationError       - fatal, raised before any external mutation
    ├── CollaboratorUnavailable  - tool or credential missing
    │   └── CredentialMissing
    ├── NotBound                 - secret looked up outside its scope
    ├── CredentialInUse          - secret already bound by another scope
    ├── RemoteOperationFailure   - build / push / apply returned an error
    ├── ConvergenceTimeout       - rollout did not converge in time
    ├── StageTimeout             - a stage exceeded its bound
    └── NotificationFailure      - webhook delivery failed (always swallowed)

The controller resolves all of these at the stage boundary.
"""


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(PipelineError):
    pass


class CollaboratorUnavailable(PipelineError):
    pass


class CredentialMissing(CollaboratorUnavailable):
    def __init__(self, name: str) -> None:
        super().__init__(f"Credential '{name}' is not available in the secret store")
        self.name = name


class NotBound(PipelineError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Credential '{name}' is not bound in the current scope")
        self.name = name


class CredentialInUse(PipelineError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Credential '{name}' is already bound by another scope")
        self.name = name


class RemoteOperationFailure(PipelineError):
    def __init__(self, operation: str, detail: str = "") -> None:
        message = f"{operation} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation
        self.detail = detail


class ConvergenceTimeout(PipelineError):
    def __init__(self, targets: list[str]) -> None:
        super().__init__(f"Rollout did not converge for: {', '.join(targets)}")
        self.targets = targets


class StageTimeout(PipelineError):
    def __init__(self, stage: str, timeout: float) -> None:
        super().__init__(f"Stage '{stage}' exceeded its {timeout:g}s timeout")
        self.stage = stage
        self.timeout = timeout


class NotificationFailure(PipelineError):
    pass
