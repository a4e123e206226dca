"""Provider client boundary with error classification.

Every AWS call made by the orchestration engine goes through
ProviderClient. Failures raised by botocore or the network stack are
converted here, once, into a ProviderError carrying a closed ErrorKind
tag, so retry decisions never depend on string matching at call sites.
"""

import logging
import socket
from enum import Enum
from typing import Any, Dict, List, Optional

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
)


logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Closed set of provider failure categories."""

    THROTTLING = "throttling"
    SERVICE_UNAVAILABLE = "service-unavailable"
    CONTENTION = "contention"
    NETWORK = "network"
    ACCESS_DENIED = "access-denied"
    NOT_FOUND = "not-found"
    ALREADY_EXISTS = "already-exists"
    VALIDATION = "validation"
    UNKNOWN = "unknown"

    @property
    def transient(self) -> bool:
        """True when a failure of this kind may succeed if retried."""
        return self in _TRANSIENT_KINDS


_TRANSIENT_KINDS = frozenset({
    ErrorKind.THROTTLING,
    ErrorKind.SERVICE_UNAVAILABLE,
    ErrorKind.CONTENTION,
    ErrorKind.NETWORK,
})

THROTTLING_ERROR_CODES = frozenset({
    'Throttling',
    'ThrottlingException',
    'ThrottledException',
    'TooManyRequestsException',
    'TooManyUpdates',
    'RequestLimitExceeded',
    'RequestThrottled',
    'RequestThrottledException',
    'SlowDown',
    'LimitExceededException',
})

SERVICE_UNAVAILABLE_ERROR_CODES = frozenset({
    'InternalErrorException',
    'InternalException',
    'InternalError',
    'InternalFailure',
    'InternalServerError',
    'InternalServerException',
    'ServiceUnavailable',
    'ServiceUnavailableException',
})

CONTENTION_ERROR_CODES = frozenset({
    'ConcurrentModificationException',
    'ConcurrentModifications',
    'OperationNotPermittedException',
    'PolicyTypeNotEnabledException',
    'InsufficientDeliveryPolicyException',
    'NoAvailableDeliveryChannelException',
    'CredentialsProviderError',
})

ACCESS_DENIED_ERROR_CODES = frozenset({
    'AccessDenied',
    'AccessDeniedException',
    'AccessDeniedForDependencyException',
    'AuthFailure',
    'UnauthorizedOperation',
    'UnrecognizedClientException',
    'InvalidClientTokenId',
    'ExpiredToken',
    'ExpiredTokenException',
    'AWSOrganizationsNotInUseException',
})

NOT_FOUND_ERROR_CODES = frozenset({
    'NoSuchEntity',
    'NoSuchEntityException',
    'NotFoundException',
    'ResourceNotFoundException',
    'AccountNotFoundException',
    'CreateAccountStatusNotFoundException',
    'OrganizationalUnitNotFoundException',
})

ALREADY_EXISTS_ERROR_CODES = frozenset({
    'EntityAlreadyExists',
    'EntityAlreadyExistsException',
    'AlreadyExistsException',
    'AccountAlreadyRegisteredException',
    'DuplicateOrganizationalUnitException',
    'DuplicateAccountException',
    'ConflictException',
})

VALIDATION_ERROR_CODES = frozenset({
    'ValidationError',
    'ValidationException',
    'InvalidInputException',
    'InvalidParameterValue',
    'InvalidParameterException',
    'MalformedPolicyDocument',
    'ConstraintViolationException',
})

_CODE_TO_KIND = {}
for _codes, _kind in (
    (THROTTLING_ERROR_CODES, ErrorKind.THROTTLING),
    (SERVICE_UNAVAILABLE_ERROR_CODES, ErrorKind.SERVICE_UNAVAILABLE),
    (CONTENTION_ERROR_CODES, ErrorKind.CONTENTION),
    (ACCESS_DENIED_ERROR_CODES, ErrorKind.ACCESS_DENIED),
    (NOT_FOUND_ERROR_CODES, ErrorKind.NOT_FOUND),
    (ALREADY_EXISTS_ERROR_CODES, ErrorKind.ALREADY_EXISTS),
    (VALIDATION_ERROR_CODES, ErrorKind.VALIDATION),
):
    for _code in _codes:
        _CODE_TO_KIND[_code] = _kind


class ProviderError(Exception):
    """Classified failure of a provider operation.

    Attributes:
        operation: Provider operation name (e.g. 'CreateRole')
        kind: ErrorKind classification
        code: Provider error code, or the exception type for network errors
        message: Provider error message
    """

    def __init__(
        self,
        operation: str,
        kind: ErrorKind,
        code: str,
        message: str = "",
    ) -> None:
        self.operation = operation
        self.kind = kind
        self.code = code
        self.message = message
        text = f"{operation} failed with {code}"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)

    @property
    def transient(self) -> bool:
        return self.kind.transient


def classify_error(error: BaseException) -> ErrorKind:
    """Map a raw botocore or network exception onto an ErrorKind.

    Args:
        error: Exception raised by a boto3 client call

    Returns:
        ErrorKind for the exception; UNKNOWN when it is not recognised
    """
    if isinstance(error, ProviderError):
        return error.kind

    if isinstance(error, ClientError):
        code = error.response.get('Error', {}).get('Code', '')
        kind = _CODE_TO_KIND.get(code)
        if kind is not None:
            return kind
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        if status == 429:
            return ErrorKind.THROTTLING
        if status in (500, 502, 503, 504):
            return ErrorKind.SERVICE_UNAVAILABLE
        return ErrorKind.UNKNOWN

    if isinstance(error, (BotoConnectionError, HTTPClientError)):
        return ErrorKind.NETWORK

    # ECONNRESET, EPIPE, ENOTFOUND and ETIMEDOUT surface as these
    if isinstance(error, (ConnectionError, TimeoutError, socket.gaierror)):
        return ErrorKind.NETWORK

    return ErrorKind.UNKNOWN


def to_provider_error(operation: str, error: BaseException) -> ProviderError:
    """Wrap a raw exception into a ProviderError for the given operation."""
    if isinstance(error, ProviderError):
        return error
    if isinstance(error, ClientError):
        details = error.response.get('Error', {})
        code = details.get('Code', 'Unknown')
        message = details.get('Message', '')
    else:
        code = type(error).__name__
        message = str(error)
    return ProviderError(operation, classify_error(error), code, message)


def _operation_title(operation_name: str) -> str:
    return ''.join(part.capitalize() for part in operation_name.split('_'))


class ProviderClient:
    """Thin wrapper around a boto3 client that classifies failures.

    Operations are addressed by their boto3 method name
    (e.g. 'create_role'); errors are re-raised as ProviderError.
    """

    def __init__(
        self,
        client: Any,
        service_name: str,
        region_name: Optional[str] = None,
    ) -> None:
        self._client = client
        self.service_name = service_name
        self.region_name = region_name

    @property
    def client(self) -> Any:
        """Underlying boto3 client."""
        return self._client

    def send(self, operation_name: str, **parameters: Any) -> Dict[str, Any]:
        """Issue a named provider operation.

        Args:
            operation_name: boto3 method name of the operation
            **parameters: Operation request parameters

        Returns:
            Structured provider response

        Raises:
            ProviderError: When the operation fails
        """
        method = getattr(self._client, operation_name)
        logger.debug(
            f"Calling {self.service_name}.{operation_name} in {self.region_name}"
        )
        try:
            return method(**parameters)
        except (ClientError, BotoCoreError, OSError) as e:
            raise to_provider_error(_operation_title(operation_name), e) from e

    def paginate(
        self,
        operation_name: str,
        result_key: str,
        **parameters: Any,
    ) -> List[Any]:
        """Collect every item of a paginated listing.

        Args:
            operation_name: boto3 method name of the listing operation
            result_key: Response key holding the items of each page
            **parameters: Operation request parameters

        Returns:
            Items from all pages, in provider order

        Raises:
            ProviderError: When any page request fails
        """
        items: List[Any] = []
        try:
            paginator = self._client.get_paginator(operation_name)
            for page in paginator.paginate(**parameters):
                items.extend(page.get(result_key, []))
        except (ClientError, BotoCoreError, OSError) as e:
            raise to_provider_error(_operation_title(operation_name), e) from e
        return items

    def wait(
        self,
        waiter_name: str,
        delay: Optional[int] = None,
        max_attempts: Optional[int] = None,
        **parameters: Any,
    ) -> None:
        """Block on a boto3 waiter.

        Raises:
            botocore.exceptions.WaiterError: When the waiter gives up
        """
        waiter_config = {}
        if delay is not None:
            waiter_config['Delay'] = delay
        if max_attempts is not None:
            waiter_config['MaxAttempts'] = max_attempts
        waiter = self._client.get_waiter(waiter_name)
        if waiter_config:
            waiter.wait(WaiterConfig=waiter_config, **parameters)
        else:
            waiter.wait(**parameters)
