import logging
from contextlib import contextmanager
from enum import Enum
from typing import Iterator

from bson.errors import InvalidId
from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError


logger = logging.getLogger(__name__)

# Mongo server codes: Unauthorized, AuthenticationFailed
_AUTH_CODES = {13, 18}


class ErrorKind(str, Enum):

    NETWORK = "network"
    NOT_AUTHORIZED = "not_authorized"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"


class RepositoryError(Exception):

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"RepositoryError({self.kind.value!r}, {self.message!r})"


@contextmanager
def gateway_errors(operation: str) -> Iterator[None]:
    """Translate driver exceptions raised inside the block into RepositoryError."""
    try:
        yield
    except RepositoryError:
        raise
    except InvalidId as exc:
        raise RepositoryError(ErrorKind.NOT_FOUND, f"{operation}: unknown id ({exc})") from exc
    except OperationFailure as exc:
        if exc.code in _AUTH_CODES:
            raise RepositoryError(ErrorKind.NOT_AUTHORIZED, f"{operation}: {exc}") from exc
        logger.warning("%s failed on the gateway: %s", operation, exc)
        raise RepositoryError(ErrorKind.NETWORK, f"{operation}: {exc}") from exc
    except (ServerSelectionTimeoutError, NetworkTimeout, AutoReconnect, ConnectionFailure) as exc:
        raise RepositoryError(ErrorKind.NETWORK, f"{operation}: gateway unreachable ({exc})") from exc
    except (RedisConnectionError, RedisTimeoutError) as exc:
        raise RepositoryError(ErrorKind.NETWORK, f"{operation}: realtime bus unreachable ({exc})") from exc
    except (PyMongoError, RedisError) as exc:
        raise RepositoryError(ErrorKind.NETWORK, f"{operation}: {exc}") from exc
