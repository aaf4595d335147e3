from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen"
            )
        if name in self._implementations:
            raise ValueError(
                f"{self.name} implementation already registered with name: {name}"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def __contains__(self, name: object) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers that process background work.

    ``payload_schema`` is the pydantic model the job's metadata is validated
    against. ``timeout_s`` bounds a single run (None means unbounded) and
    ``supports_pause`` tells the engine whether the handler suspends at its
    checkpoints when asked to pause.
    """

    payload_schema: Any
    timeout_s: float | None
    supports_pause: bool

    async def handle(self, ctx: Any, payload: Any) -> dict[str, Any] | None:
        """
        Handle a background job.

        Args:
            ctx: Job context for progress reporting and cooperative checkpoints
            payload: Validated instance of ``payload_schema``

        Returns:
            Optional result dictionary to store with the completed job
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for background job handlers, keyed by job type."""

    def __init__(self):
        super().__init__("Job")
