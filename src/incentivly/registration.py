"""Device registration: register_user, update_user_identifier, context loading."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from incentivly.api_client import (
    IncentivlyAPIError,
    IncentivlyClient,
    UpdateUserIdentifierResponse,
    UserRegistrationResponse,
)
from incentivly.constants import KEY_DEV_KEY, KEY_IS_REGISTERED, KEY_USER_IDENTIFIER
from incentivly.errors import RegistrationError, RegistrationErrorReason
from incentivly.store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistrationContext:
    """Identity needed to report purchases. Read once per reconciliation pass."""

    user_identifier: str | None = None
    dev_key: str | None = None
    is_registered: bool = False


async def load_registration(store: Store) -> RegistrationContext:
    """Read the stored identity fields."""
    return RegistrationContext(
        user_identifier=await store.get_string(KEY_USER_IDENTIFIER),
        dev_key=await store.get_string(KEY_DEV_KEY),
        is_registered=await store.get_bool(KEY_IS_REGISTERED, False),
    )


def require_identity(context: RegistrationContext) -> tuple[str, str]:
    """Return ``(user_identifier, dev_key)`` or raise RegistrationError."""
    if not context.user_identifier:
        raise RegistrationError(RegistrationErrorReason.NOT_REGISTERED)
    if not context.dev_key:
        raise RegistrationError(RegistrationErrorReason.DEV_KEY_MISSING)
    return context.user_identifier, context.dev_key


async def register_user(
    client: IncentivlyClient,
    store: Store,
    dev_key: str,
    user_identifier: str | None = None,
) -> UserRegistrationResponse:
    """Register this installation with the backend.

    Already-registered installations get the stored identifier back with no
    remote call. On success the identifier (the caller's, else the one the
    server assigned), the dev key and the registered flag are stored.
    Transport errors are logged and re-raised.
    """
    if await store.get_bool(KEY_IS_REGISTERED, False):
        stored_id = await store.get_string(KEY_USER_IDENTIFIER)
        logger.info(
            "User already registered with identifier: %s", stored_id or "unknown",
        )
        return UserRegistrationResponse(
            success=True,
            user_identifier=stored_id,
            message="User already registered",
        )

    try:
        response = await client.register_user(dev_key, user_identifier)
    except IncentivlyAPIError as e:
        logger.error("Failed to register user: %s", e)
        raise

    if response.success:
        to_store = user_identifier or response.user_identifier
        await store.set_string(KEY_USER_IDENTIFIER, to_store)
        await store.set_string(KEY_DEV_KEY, dev_key)
        await store.set_bool(KEY_IS_REGISTERED, True)
        logger.info(
            "User registered successfully with identifier: %s", to_store or "unknown",
        )
    else:
        logger.warning("Registration rejected: %s", response.message or "no message")
    return response


async def update_user_identifier(
    client: IncentivlyClient,
    store: Store,
    new_user_identifier: str,
) -> UpdateUserIdentifierResponse:
    """Move this installation's registrations and payments to a new identifier.

    Fails fast with RegistrationError when no identifier or dev key is stored.
    """
    current, dev_key = require_identity(await load_registration(store))

    try:
        response = await client.update_user_identifier(
            current, new_user_identifier, dev_key,
        )
    except IncentivlyAPIError as e:
        logger.error("Failed to update user identifier: %s", e)
        raise

    if response.success:
        await store.set_string(KEY_USER_IDENTIFIER, new_user_identifier)
        logger.info(
            "User identifier updated from %r to %r; "
            "updated %d registration(s) and %d payment(s).",
            current, new_user_identifier,
            response.registrations_updated or 0, response.payments_updated or 0,
        )
    return response
