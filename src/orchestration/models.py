"""Data model for account/region fan-out."""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

from src.core.config import ConfigurationError


T = TypeVar('T')

DEFAULT_MAX_CONCURRENT_ENVIRONMENTS = 10
DEFAULT_OPERATION_TIMEOUT_MS = 5 * 60 * 1000


@dataclass(frozen=True)
class AccountTarget:
    """An account in scope of an orchestration run.

    The email identifies the account before it has an ID.
    """

    id: Optional[str]
    name: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_organizations(cls, account: Dict[str, Any]) -> 'AccountTarget':
        """Build from an Organizations ListAccounts entry."""
        return cls(
            id=account.get('Id'),
            name=account.get('Name'),
            email=account.get('Email'),
        )

    @property
    def label(self) -> str:
        return f"{self.name or 'Unknown'}:{self.id or 'Unknown'}"


@dataclass(frozen=True)
class OrderedAccountBatch:
    """Accounts processed together; batches run in ascending order."""

    name: str
    order: int
    accounts: Tuple[AccountTarget, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, 'accounts', tuple(self.accounts))


@dataclass(frozen=True)
class ConcurrencySettings:
    """Worker pool bounds for a run.

    Attributes:
        max_concurrent_environments: Tasks in flight at once
        operation_timeout_ms: Per-task timeout in milliseconds
    """

    max_concurrent_environments: int = DEFAULT_MAX_CONCURRENT_ENVIRONMENTS
    operation_timeout_ms: int = DEFAULT_OPERATION_TIMEOUT_MS

    def __post_init__(self) -> None:
        if self.max_concurrent_environments <= 0:
            raise ConfigurationError("max_concurrent_environments must be greater than 0")
        if self.operation_timeout_ms <= 0:
            raise ConfigurationError("operation_timeout_ms must be greater than 0")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ConcurrencySettings':
        data = data or {}
        return cls(
            max_concurrent_environments=data.get(
                'max_concurrent_environments', DEFAULT_MAX_CONCURRENT_ENVIRONMENTS
            ),
            operation_timeout_ms=data.get(
                'operation_timeout_ms', DEFAULT_OPERATION_TIMEOUT_MS
            ),
        )


@dataclass
class TaskResult(Generic[T]):
    """Outcome of one (account, region) task."""

    account: AccountTarget
    region: str
    value: Optional[T] = None
    error: Optional[BaseException] = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.error is None


def validate_batch_orders(batches: Sequence[OrderedAccountBatch]) -> List[OrderedAccountBatch]:
    """Sort batches by order, rejecting ties.

    Raises:
        ConfigurationError: When two batches share an order
    """
    seen: Dict[int, str] = {}
    for batch in batches:
        if batch.order in seen:
            raise ConfigurationError(
                f"Batches '{seen[batch.order]}' and '{batch.name}' share order {batch.order}"
            )
        seen[batch.order] = batch.name
    return sorted(batches, key=lambda batch: batch.order)
