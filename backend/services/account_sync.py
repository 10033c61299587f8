"""
Account reconciliation service.

Brings the access-control system's user accounts in line with the portal's
user table:
- Creates accounts (with a temporary password) for eligible users
- Corrects drifted email / display name / superuser properties
- Optionally deletes accounts that no longer have a portal user

Nothing is written to the local database; the access server is the system of
record for accounts.
"""

import logging
import secrets
import string
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from gateway import AccountField, AccountProperties, Gateway, TransportError
from models import User
from utils.audit import audit
from utils.logging_utils import LogTimer

logger = logging.getLogger(__name__)

SKIP_NO_USERNAME = "no-username"
SKIP_IN_SYNC = "in-sync"
SKIP_ORPHANED = "orphaned"

PASSWORD_SYMBOLS = "!@#$%^&*"
_PASSWORD_CLASSES = (
    string.ascii_lowercase,
    string.ascii_uppercase,
    string.digits,
    PASSWORD_SYMBOLS,
)
PASSWORD_ALPHABET = "".join(_PASSWORD_CLASSES)


class SyncSetupError(Exception):
    """Either side of the diff could not be read; the run cannot proceed."""


class UserNotEligibleError(Exception):
    """A single-user sync was requested for a user that may not have an account."""


@dataclass
class CreatedAccount:
    username: str
    user_id: Optional[int] = None
    # None on dry runs
    temp_password: Optional[str] = None


@dataclass
class UpdatedAccount:
    username: str
    fields: List[str]


@dataclass
class SkippedUser:
    reason: str
    username: Optional[str] = None
    user_id: Optional[int] = None


@dataclass
class AccountError:
    username: str
    operation: str
    error: str


@dataclass
class ReconciliationResult:
    """Per-username outcome of one reconciliation pass."""
    created: List[CreatedAccount] = field(default_factory=list)
    updated: List[UpdatedAccount] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    skipped: List[SkippedUser] = field(default_factory=list)
    errors: List[AccountError] = field(default_factory=list)
    dry_run: bool = False

    def counts(self) -> Dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "deleted": len(self.deleted),
            "skipped": len(self.skipped),
            "errors": len(self.errors),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["counts"] = self.counts()
        return data


@dataclass
class _DesiredAccount:
    """Snapshot of an eligible user, detached from the ORM session."""
    user_id: int
    username: Optional[str]
    properties: Dict[AccountField, Any]


def generate_temp_password(length: int = 16) -> str:
    """
    Generate a random temporary password.

    Contains at least one lowercase letter, uppercase letter, digit and symbol.
    """
    if length < len(_PASSWORD_CLASSES):
        raise ValueError(f"Password length must be at least {len(_PASSWORD_CLASSES)}")
    chars = [secrets.choice(charset) for charset in _PASSWORD_CLASSES]
    chars.extend(secrets.choice(PASSWORD_ALPHABET) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def desired_properties(user: User) -> Dict[AccountField, Any]:
    """Properties the external account should carry for ``user``."""
    desired: Dict[AccountField, Any] = {AccountField.EMAIL: user.email}
    # Display name is only managed once the user has set one
    if user.name:
        desired[AccountField.DISPLAY_NAME] = user.name
    desired[AccountField.IS_SUPERUSER] = user.role == "admin"
    return desired


def drifted_fields(
    desired: Dict[AccountField, Any], current: AccountProperties
) -> List[AccountField]:
    return [key for key, value in desired.items() if current.get(key) != value]


class AccountReconciler:
    """Diffs portal users against external accounts and applies the difference."""

    def __init__(
        self,
        gateway: Gateway,
        session_factory: async_sessionmaker,
        password_length: int = 16,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.password_length = password_length

    async def _load_eligible_users(self) -> List[_DesiredAccount]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(User)
                    .where(User.deleted_at.is_(None), User.email_verified.is_(True))
                    .order_by(User.id)
                )
                users = result.scalars().all()
                return [
                    _DesiredAccount(
                        user_id=user.id,
                        username=user.username or None,
                        properties=desired_properties(user),
                    )
                    for user in users
                ]
        except SQLAlchemyError as e:
            raise SyncSetupError(f"Cannot read users: {e}") from e

    async def _load_accounts(self) -> Dict[str, AccountProperties]:
        try:
            return await self.gateway.list_accounts()
        except TransportError as e:
            raise SyncSetupError(f"Cannot list external accounts: {e}") from e

    async def reconcile(
        self,
        dry_run: bool = False,
        delete_orphaned: bool = False,
    ) -> ReconciliationResult:
        """
        Run one full reconciliation pass.

        Args:
            dry_run: Classify every user without calling any mutating operation
            delete_orphaned: Delete external accounts with no eligible portal user

        Returns:
            ReconciliationResult; every username seen lands in exactly one list

        Raises:
            SyncSetupError: The user table or the account list could not be read
        """
        result = ReconciliationResult(dry_run=dry_run)
        label = "Account reconciliation (dry run)" if dry_run else "Account reconciliation"

        with LogTimer(logger, label) as timer:
            # Step 1: Authoritative users
            users = await self._load_eligible_users()
            # Step 2: External accounts
            accounts = await self._load_accounts()
            logger.info(f"Loaded {len(users)} eligible users and {len(accounts)} external accounts")

            desired: Dict[str, _DesiredAccount] = {}
            for user in users:
                if user.username is None:
                    result.skipped.append(
                        SkippedUser(reason=SKIP_NO_USERNAME, user_id=user.user_id)
                    )
                    continue
                desired[user.username] = user

            # Step 3: Walk the union of both sides in username order
            for username in sorted(set(desired) | set(accounts)):
                if username in desired:
                    await self._reconcile_user(
                        desired[username], accounts.get(username), result, dry_run
                    )
                elif delete_orphaned:
                    await self._delete_orphan(username, result, dry_run)
                else:
                    result.skipped.append(SkippedUser(reason=SKIP_ORPHANED, username=username))

            counts = result.counts()
            timer.set_record_count(len(desired) + len(set(accounts) - set(desired)))
            for key, value in counts.items():
                timer.add_info(f"accounts_{key}", value)

        if result.errors:
            logger.warning(f"Reconciliation finished with {len(result.errors)} errors")
        return result

    async def sync_user(self, user_id: int, dry_run: bool = False) -> ReconciliationResult:
        """
        Reconcile a single portal user.

        Raises:
            UserNotEligibleError: missing, deleted, unverified or without username
            SyncSetupError: the account list could not be read
        """
        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise UserNotEligibleError(f"User {user_id} not found")
            if user.deleted_at is not None:
                raise UserNotEligibleError(f"User {user_id} is deleted")
            if not user.email_verified:
                raise UserNotEligibleError(f"User {user_id} has not verified their email")
            if not user.username:
                raise UserNotEligibleError(f"User {user_id} has no username")
            target = _DesiredAccount(
                user_id=user.id,
                username=user.username,
                properties=desired_properties(user),
            )

        accounts = await self._load_accounts()
        result = ReconciliationResult(dry_run=dry_run)
        await self._reconcile_user(target, accounts.get(target.username), result, dry_run)
        return result

    async def remove_account(self, username: str) -> None:
        """Delete one external account. TransportError propagates."""
        try:
            await self.gateway.delete_account(username)
        except TransportError as e:
            audit.log_account_failure(username, "delete_account", str(e))
            raise
        audit.log_account_deleted(username)
        logger.info(f"Deleted external account {username}")

    async def _reconcile_user(
        self,
        user: _DesiredAccount,
        current: Optional[AccountProperties],
        result: ReconciliationResult,
        dry_run: bool,
    ) -> None:
        username = user.username
        if current is None:
            await self._create(user, result, dry_run)
            return

        drift = drifted_fields(user.properties, current)
        if not drift:
            result.skipped.append(
                SkippedUser(reason=SKIP_IN_SYNC, username=username, user_id=user.user_id)
            )
            return

        names = [f.value for f in drift]
        if not dry_run:
            for key in drift:
                if not await self._call(
                    result, username, "set_property",
                    self.gateway.set_property(username, key, user.properties[key]),
                ):
                    return
            audit.log_account_updated(username, names)
            logger.info(f"Updated {username}: {', '.join(names)}")
        result.updated.append(UpdatedAccount(username=username, fields=names))

    async def _create(
        self, user: _DesiredAccount, result: ReconciliationResult, dry_run: bool
    ) -> None:
        username = user.username
        if dry_run:
            result.created.append(CreatedAccount(username=username, user_id=user.user_id))
            return

        password = generate_temp_password(self.password_length)
        if not await self._call(
            result, username, "create_or_set_password",
            self.gateway.create_or_set_password(username, password),
        ):
            return
        for key, value in user.properties.items():
            if not await self._call(
                result, username, "set_property",
                self.gateway.set_property(username, key, value),
            ):
                return

        names = [f.value for f in user.properties]
        audit.log_account_created(username, names)
        logger.info(f"Created external account {username}")
        result.created.append(
            CreatedAccount(username=username, user_id=user.user_id, temp_password=password)
        )

    async def _delete_orphan(
        self, username: str, result: ReconciliationResult, dry_run: bool
    ) -> None:
        if not dry_run:
            if not await self._call(
                result, username, "delete_account", self.gateway.delete_account(username)
            ):
                return
            audit.log_account_deleted(username)
            logger.info(f"Deleted orphaned external account {username}")
        result.deleted.append(username)

    async def _call(self, result: ReconciliationResult, username: str, operation: str, call) -> bool:
        """Await one gateway call; record a TransportError against ``username``."""
        try:
            await call
            return True
        except TransportError as e:
            logger.error(f"{operation} failed for {username}: {e}")
            audit.log_account_failure(username, operation, str(e))
            result.errors.append(AccountError(username=username, operation=operation, error=str(e)))
            return False
