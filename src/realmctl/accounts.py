"""Account creation against the shared auth database."""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import insert, select

from .database import Connection
from .errors import UserInputError
from .schema import account, account_access
from .srp import TRINITYCORE, SRP6Params, compute_verifier, generate_salt

ALL_REALMS = -1


class DuplicateAccountError(UserInputError):
    """Raised when an account with the requested username already exists."""


@dataclass(frozen=True)
class CreatedAccount:
    """Summary of a newly inserted account."""

    id: int | None
    username: str
    gm_level: int


class CredentialIssuer:
    """Create accounts with a random salt and an SRP6 verifier.

    The duplicate check and the insert are separate round-trips. Two
    concurrent creations of the same username can both pass the check; the
    unique constraint on ``account.username`` is what finally rejects one.
    """

    def __init__(self, auth: Connection, params: SRP6Params = TRINITYCORE) -> None:
        self.auth = auth
        self.params = params

    async def create_account(
        self,
        username: str,
        password: str,
        gm_level: int = 0,
        email: str = "",
    ) -> CreatedAccount:
        """Insert a new account and, for ``gm_level > 0``, its access grant."""
        if not username.strip() or not password:
            raise UserInputError("An account needs both a username and a password.")
        if gm_level < 0:
            raise UserInputError(f"GM level must be zero or positive, got {gm_level}.")
        username = username.strip().upper()
        password = password.upper()
        salt = generate_salt(self.params)
        verifier = compute_verifier(self.params, salt, username, password)

        if await self._account_id(username) is not None:
            raise DuplicateAccountError(f'Username "{username}" already exists')

        await self.auth.execute(
            insert(account).values(
                username=username,
                salt=salt,
                verifier=verifier,
                reg_mail=email,
                email=email,
            )
        )

        account_id: int | None = None
        if gm_level > 0:
            account_id = await self._account_id(username)
            await self.auth.execute(
                insert(account_access).values(
                    AccountID=account_id,
                    SecurityLevel=gm_level,
                    RealmID=ALL_REALMS,
                    Comment=None,
                )
            )
        return CreatedAccount(id=account_id, username=username, gm_level=gm_level)

    async def _account_id(self, username: str) -> int | None:
        rows = await self.auth.fetch_all(select(account.c.id).where(account.c.username == username))
        return int(rows[0]["id"]) if rows else None


__all__ = ["CreatedAccount", "CredentialIssuer", "DuplicateAccountError"]
