"""
converge error taxonomy.

The core only raises these; the CLI decides how they are printed and which
exit code they map to.
"""


class ConvergeError(Exception):
    """Base class for every converge error."""


class ConfigError(ConvergeError):
    """Declarations or settings could not be read or are invalid."""


class GraphError(ConvergeError):
    """The declared resource graph is invalid. Raised before any remote call."""


class CycleDetected(GraphError):
    def __init__(self, cycle):
        self.cycle = list(cycle)
        super().__init__("dependency cycle: " + " -> ".join(self.cycle))


class UnresolvedReference(GraphError):
    def __init__(self, source: str, target: str, reason: str = "does not exist"):
        self.source = source
        self.target = target
        super().__init__(f"{source}: reference to '{target}' {reason}")


class DuplicateNode(GraphError):
    def __init__(self, address: str, files=()):
        self.address = address
        where = f" (declared in {', '.join(files)})" if files else ""
        super().__init__(f"resource '{address}' is declared more than once{where}")


class PlanConflict(ConvergeError):
    """The state lock is held by another run."""


class StateConflict(ConvergeError):
    """The persisted state changed underneath this run."""


class ProviderError(ConvergeError):
    """Error delegated from a provider plugin."""


class ProviderTransientError(ProviderError):
    """Network failure, throttling or similar. Safe to retry."""


class ProviderPermanentError(ProviderError):
    """The remote API rejected the operation. Retrying will not help."""
