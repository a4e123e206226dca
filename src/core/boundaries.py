"""Boundary resolution for governed regions and accounts.

Given the universe of boundaries (regions today) and a pair of
ignore/disable filters, computes which boundaries a service must be
enabled in and which it must be disabled in.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from src.core.aws_client import AWSClientManager, Credentials
from src.core.config import ConfigurationError
from src.core.logger import OperationLogger
from src.core.throttle import throttling_backoff


class BoundaryType(Enum):
    """Kinds of boundary a service can be scoped by."""

    REGIONS = "regions"
    ORGANIZATIONAL_UNITS = "organizational-units"
    ACCOUNTS = "accounts"


class BoundaryConfigurationError(ConfigurationError):
    """Raised when boundary filters are inconsistent."""
    pass


class UnsupportedBoundaryTypeError(ConfigurationError):
    """Raised when listing is requested for an unsupported boundary type."""
    pass


_FILTER_KEYS = {
    BoundaryType.REGIONS: ('ignored_regions', 'disabled_regions'),
    BoundaryType.ACCOUNTS: ('ignored_accounts', 'disabled_accounts'),
    BoundaryType.ORGANIZATIONAL_UNITS: ('ignored_organizational_units', 'disabled_organizational_units'),
}


@dataclass(frozen=True)
class BoundaryFilters:
    """Ignore and disable filters for one boundary type.

    Ignored boundaries are never touched. Disabled boundaries are
    turned off while the service stays enabled elsewhere. The two sets
    must not overlap.
    """

    ignored: Tuple[str, ...] = ()
    disabled: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, 'ignored', tuple(self.ignored))
        object.__setattr__(self, 'disabled', tuple(self.disabled))
        overlap = [item for item in self.disabled if item in self.ignored]
        if overlap:
            raise BoundaryConfigurationError(
                "InvalidInput: Boundaries cannot be both disabled and ignored. "
                f"Overlapping boundaries: {', '.join(overlap)}"
            )

    @classmethod
    def from_dict(
        cls,
        data: Optional[Dict[str, Any]],
        boundary_type: BoundaryType = BoundaryType.REGIONS,
    ) -> 'BoundaryFilters':
        """Build filters from configuration keys.

        Args:
            data: Mapping with e.g. ignored_regions / disabled_regions
            boundary_type: Boundary type selecting which keys are read

        Returns:
            Validated BoundaryFilters
        """
        data = data or {}
        ignored_key, disabled_key = _FILTER_KEYS[boundary_type]
        return cls(
            ignored=tuple(data.get(ignored_key) or ()),
            disabled=tuple(data.get(disabled_key) or ()),
        )


@dataclass(frozen=True)
class BoundaryContext:
    """Where and as whom to list the boundary universe."""

    partition: str
    region: str
    credentials: Optional[Credentials] = field(default=None, repr=False)


@dataclass(frozen=True)
class BoundaryResult:
    """Resolved boundaries; the three lists are pairwise disjoint."""

    enabled: List[str]
    disabled: List[str]
    ignored: List[str] = field(default_factory=list)


def validate_region_filters(
    service_enabled: bool,
    filters: BoundaryFilters,
    logger: Optional[OperationLogger] = None,
    log_prefix: Optional[str] = None,
) -> None:
    """Reject filter combinations that cannot be honoured.

    Args:
        service_enabled: Whether the governing service is being enabled
        filters: Region filters to check
        logger: Operation logger for the validation error event
        log_prefix: Log prefix of the caller

    Raises:
        BoundaryConfigurationError: When disabled regions are given for a
            disabled service
    """
    if not service_enabled and filters.disabled:
        message = (
            "InvalidInput: disabled regions cannot be specified when service is disabled. "
            "Use ignored regions instead to exclude regions from processing."
        )
        if logger:
            logger.error(message, log_prefix)
        raise BoundaryConfigurationError(message)


class BoundaryResolver:
    """Resolves in-scope boundaries for a service.

    Args:
        aws_client: Client manager used to list the boundary universe
        logger: Operation logger; defaults to a module logger
    """

    def __init__(
        self,
        aws_client: AWSClientManager,
        logger: Optional[OperationLogger] = None,
    ) -> None:
        self.aws_client = aws_client
        self.logger = logger or OperationLogger()

    def resolve_all(self, boundary_type: BoundaryType, context: BoundaryContext) -> List[str]:
        """List every boundary of the given type.

        Args:
            boundary_type: Boundary type to list
            context: Region and credentials for the listing call

        Returns:
            Boundary names in provider order

        Raises:
            UnsupportedBoundaryTypeError: For types other than REGIONS
            ProviderError: When the listing call fails
        """
        if boundary_type is not BoundaryType.REGIONS:
            raise UnsupportedBoundaryTypeError(
                f"Unsupported boundary type: {boundary_type.value}"
            )

        ec2 = self.aws_client.get_client('ec2', context.region, credentials=context.credentials)
        response = throttling_backoff(lambda: ec2.send('describe_regions'))
        regions = [
            region.get('RegionName')
            for region in response.get('Regions') or []
        ]
        return [name for name in regions if name]

    def resolve_enabled(
        self,
        boundary_type: BoundaryType,
        service_enabled: bool,
        context: BoundaryContext,
        all_boundaries: Optional[List[str]] = None,
        filters: Optional[BoundaryFilters] = None,
    ) -> BoundaryResult:
        """Split the boundary universe into enabled and disabled sets.

        Args:
            boundary_type: Boundary type being resolved
            service_enabled: Whether the service is being enabled
            context: Listing context, used when all_boundaries is None
            all_boundaries: Pre-computed universe
            filters: Ignore/disable filters

        Returns:
            BoundaryResult preserving universe order

        Raises:
            BoundaryConfigurationError: When filters overlap
            ProviderError: When listing the universe fails
        """
        filters = filters or BoundaryFilters()
        universe = list(all_boundaries) if all_boundaries is not None else self.resolve_all(
            boundary_type, context
        )

        ignored = set(filters.ignored)
        disabled_filter = set(filters.disabled)
        outside = [item for item in (*filters.ignored, *filters.disabled) if item not in universe]
        if outside:
            self.logger.warn(
                f"Filters reference {boundary_type.value} outside the universe: {', '.join(outside)}"
            )

        if not service_enabled:
            enabled: List[str] = []
            disabled = [item for item in universe if item not in ignored]
        else:
            enabled = [
                item for item in universe
                if item not in ignored and item not in disabled_filter
            ]
            disabled = [
                item for item in universe
                if item in disabled_filter and item not in ignored
            ]

        return BoundaryResult(
            enabled=enabled,
            disabled=disabled,
            ignored=[item for item in universe if item in ignored],
        )
