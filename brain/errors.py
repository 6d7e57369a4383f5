from .schemas import HaltReason


class BrainError(Exception):
    """Base class for errors that halt a walk."""
    reason = None

    def __init__(self, message: str, node_id: str = None):
        super().__init__(message)
        self.node_id = node_id


class AnalysisParseError(BrainError):
    """The analysis reply could not be parsed as the state's type."""
    reason = HaltReason.ANALYSIS_PARSE_ERROR

    def __init__(self, message: str, state_id: str = None, raw: str = None):
        super().__init__(message)
        self.state_id = state_id
        self.raw = raw


class MissingCredentialError(BrainError):
    reason = HaltReason.MISSING_CREDENTIAL


class UpstreamServiceError(BrainError):
    """Rate limits, timeouts, connection failures and provider 5xx responses."""
    reason = HaltReason.UPSTREAM_SERVICE_ERROR


class InvalidResponseError(BrainError):
    reason = HaltReason.INVALID_RESPONSE


class MissingPromptError(BrainError):
    """An analysis node names a state that has no analysis prompt to run."""
    reason = HaltReason.MISSING_PROMPT


class GraphNotFoundError(LookupError):
    pass
