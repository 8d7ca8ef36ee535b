"""
Error taxonomy shared by every domain module.

Each exception carries ``kind`` (one of not_found, unique_conflict,
collision, invalid_input, invalid_credentials, subscription_expired,
subscription_grace, transient, fatal) and ``code`` (the specific reason),
so callers can branch on either without parsing messages.
"""
from contextlib import contextmanager

from redis import exceptions as redis_exc
from sqlalchemy import exc as sa_exc


class CoreError(Exception):
    kind = "fatal"
    code = "fatal"
    message = "Unexpected internal error."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)

    @property
    def retryable(self) -> bool:
        return self.kind == "transient"


class NotFound(CoreError):
    kind = "not_found"
    code = "not_found"
    message = "Record not found."


class UniqueConflict(CoreError):
    kind = "unique_conflict"
    code = "unique_conflict"
    message = "A record with that value already exists."


class UsernameTaken(UniqueConflict):
    code = "username_taken"
    message = "That username is already in use. Please select another."


class DeviceNameTaken(UniqueConflict):
    code = "device_name_taken"
    message = "A device with that name already exists."


class TokenCollision(UniqueConflict):
    kind = "collision"
    code = "collision"
    message = "Pairing tokens collided with an active ticket."


class InvalidInput(CoreError):
    kind = "invalid_input"
    code = "invalid_input"
    message = "Invalid input."


class InvalidUsername(InvalidInput):
    code = "invalid_username"
    message = "Usernames are 3-20 characters of a-z, A-Z, 0-9, - and _."


class MissingEmail(InvalidInput):
    code = "missing_email"
    message = "No email address was supplied. An email address is required."


class InvalidConfirmationCode(InvalidInput):
    code = "invalid_confirmation_code"
    message = "The confirmation code entered was not valid."


class EmailAlreadyConfirmed(InvalidInput):
    code = "email_already_confirmed"
    message = "Email has already been confirmed."


class InvalidStatus(InvalidInput):
    code = "invalid_status"
    message = "Invalid status."


class InvalidClientType(InvalidInput):
    code = "invalid_client_type"
    message = "Invalid client type."


class InvalidCredentials(CoreError):
    kind = "invalid_credentials"
    code = "invalid_credentials"
    message = "The credentials entered were not valid."


class SubscriptionExpired(CoreError):
    kind = "subscription_expired"
    code = "subscription_expired"
    message = "Subscription expired."

    def __init__(self, expires, message: str | None = None):
        super().__init__(message)
        self.expires = expires


class SubscriptionGrace(SubscriptionExpired):
    kind = "subscription_grace"
    code = "subscription_grace"
    message = "Subscription expired; grace period in effect."


class Transient(CoreError):
    kind = "transient"
    code = "transient"
    message = "Temporary failure, safe to retry."


class MaintenanceMode(Transient):
    code = "maintenance_mode"
    message = "Writes are disabled while the service is in maintenance mode."


class Fatal(CoreError):
    pass


@contextmanager
def store_errors():
    """Translate driver exceptions from either store into the taxonomy."""
    try:
        yield
    except sa_exc.IntegrityError as e:
        raise UniqueConflict(str(e.orig)) from e
    except (sa_exc.OperationalError, sa_exc.DBAPIError) as e:
        raise Transient(str(e)) from e
    except (redis_exc.ConnectionError, redis_exc.TimeoutError) as e:
        raise Transient(str(e)) from e
