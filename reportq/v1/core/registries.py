from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeVar

if TYPE_CHECKING:
    from reportq.config.settings import Settings
    from reportq.v1.jobs.models import Job

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
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._implementations


# Payload Validator Registry - job-type specific checks run at ingestion
class PayloadValidator(Protocol):
    """Protocol for job-type payload validators."""

    def validate(self, payload: dict[str, Any]) -> None:
        """Raise ValidationError when the payload is unusable for the job type."""
        ...


class PayloadValidatorRegistry(Registry[PayloadValidator]):
    """Registry for payload validators (sales_summary, user_activity)."""

    def __init__(self):
        super().__init__("PayloadValidator")


# Work Handler Registry - the unit of work behind each job type
class WorkHandler(Protocol):
    """Protocol for work handlers invoked by the job processor."""

    async def __call__(self, job: "Job", settings: "Settings") -> str:
        """
        Perform the work for a job with the calling processor's settings.

        Returns:
            Reference to the produced artifact (e.g. a report URL)

        Raises:
            TransientError: recoverable failure, the job is retried
            PermanentFailure: non-recoverable failure, the job fails
        """
        ...


class WorkHandlerRegistry(Registry[WorkHandler]):
    """Registry for work handlers; the 'default' entry serves unknown job types."""

    DEFAULT = "default"

    def __init__(self):
        super().__init__("WorkHandler")

    def resolve(self, job_type: str) -> WorkHandler:
        """Get the handler for a job type, falling back to the default handler."""
        if job_type in self:
            return self.get(job_type)
        return self.get(self.DEFAULT)


# Global registry instances (singletons)
payload_validator_registry = PayloadValidatorRegistry()
work_handler_registry = WorkHandlerRegistry()
