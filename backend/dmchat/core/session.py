"""Session context for the signed-in account.

One ``SessionContext`` is created per connected client and passed explicitly
to every component that needs the current account. It is populated once after
the identity provider resolves an access token and cleared on sign-out.
"""

import logging
from typing import Optional

from dmchat.models.chat import Account, Identity

logger = logging.getLogger(__name__)


class NotAuthenticated(Exception):
    pass


class SessionContext:
    def __init__(self) -> None:
        self._identity: Optional[Identity] = None
        self._account: Optional[Account] = None

    def populate(self, identity: Identity) -> None:
        if self._identity is not None and self._identity.account_id != identity.account_id:
            raise RuntimeError("Session already belongs to another account; clear it first")
        self._identity = identity
        self._account = identity.to_account()
        logger.debug(f"Session populated for account {identity.account_id}")

    def clear(self) -> None:
        if self._identity is not None:
            logger.debug(f"Session cleared for account {self._identity.account_id}")
        self._identity = None
        self._account = None

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def account(self) -> Optional[Account]:
        return self._account

    @property
    def account_id(self) -> Optional[str]:
        return self._account.id if self._account else None

    @property
    def is_authenticated(self) -> bool:
        return self._account is not None

    def require_account(self) -> Account:
        if self._account is None:
            raise NotAuthenticated("No signed-in account")
        return self._account
