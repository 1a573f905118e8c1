class RenewalError(Exception):
    """Base class for every failure that aborts a renewal run.

    ``step`` names the stage of the run that failed and ``identifier`` the
    domain involved, when there is one.
    """

    def __init__(self, message, step=None, identifier=None):
        super().__init__(message)
        self.message = message
        self.step = step
        self.identifier = identifier

    def __str__(self):
        prefix = ""
        if self.step:
            prefix += f"[{self.step}] "
        if self.identifier:
            prefix += f"{self.identifier}: "
        return prefix + self.message


class ConfigurationError(RenewalError):
    pass


class AcmeProtocolError(RenewalError):
    def __init__(self, message, step=None, identifier=None, status=None, problem=None):
        super().__init__(message, step=step, identifier=identifier)
        self.status = status
        self.problem = problem


class OrderInvalidError(AcmeProtocolError):
    pass


class PollTimeoutError(RenewalError, TimeoutError):
    pass


class ChallengeError(RenewalError):
    pass


class ChallengePublishError(RenewalError):
    pass


class ExportError(RenewalError):
    pass


class InstallError(RenewalError):
    pass
