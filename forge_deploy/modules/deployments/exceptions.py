class DeploymentError(Exception):
    """Base class for deploy pipeline errors."""


class DeploymentNotFound(DeploymentError):
    pass


class DeploymentStoreError(DeploymentError):
    """A write to the deployment record could not be confirmed."""


class InvalidStatusTransition(DeploymentStoreError):
    pass


class StepFailed(DeploymentError):
    """Hard stop: the pipeline halts and the deployment is marked failed."""

    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step
        self.message = message


class DeploymentAlreadyRunning(DeploymentError):
    pass
