"""Error taxonomy for patternbank.

Every engine failure is raised synchronously to the immediate caller.
The only internal retry is the bounded ConflictError retry in the
Reinforcer; provider failures (embedding, judge) are never retried here.
"""


class PatternBankError(Exception):
    """Base class for engine errors.

    Optional keyword context is rendered after the message, e.g.
    ``Pattern not found [namespace=test, id=p1]``.
    """

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx}]"
        return self.message


class NotFoundError(PatternBankError, LookupError):
    """A pattern or trajectory id does not exist."""


class ConflictError(PatternBankError):
    """Concurrent update race on the same pattern row."""


class AlreadyReinforcedError(PatternBankError):
    """The (trajectory, pattern) pair has already been applied."""


class EmbeddingError(PatternBankError):
    """The embedding provider failed or returned an unusable vector."""


class JudgeError(PatternBankError):
    """The judge could not produce a verdict."""


class ValidationError(PatternBankError, ValueError):
    """Malformed input, rejected before any write."""


class ConsolidationSkipped(Exception):
    """Another consolidation pass holds the namespace.

    Not an error: the caller should try again at the next threshold.
    """

    def __init__(self, namespace: str, holder: str = ""):
        super().__init__(f"Consolidation already running for namespace '{namespace}'")
        self.namespace = namespace
        self.holder = holder
