"""Account provisioning pipeline.

Each account is created by a small saga::

    AuthorizationCheck -> ValidateInput -> CreateIdentity -> CreateProfile
        -> CreateRoleGrant -> Committed

Failures before an identity exists end in ``Rejected``. A failed profile
insert deletes the identity again (``RolledBack``) so no identity is left
without a profile. A failed role grant is only a warning: the account works
with the implicit ``student`` role.

A store call that overruns its deadline keeps running in its worker thread.
The pipeline waits for it to settle before compensating, so a write that
lands late is undone too and the username can be submitted again.

Bulk mode runs one saga per account with bounded parallelism. Accounts never
share state besides the stores, and one account's failure never touches
another's result.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

from prometheus_client import Counter

from . import identity, services
from .config import settings
from .errors import (
    ConflictError,
    DependencyFailure,
    Forbidden,
    HubError,
    InternalError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PROVISION_OUTCOMES = Counter(
    "provisioning_outcomes_total", "Account provisioning results", ["state"]
)


class ProvisionState(str, enum.Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    REJECTED = "rejected"
    SKIPPED = "skipped"


@dataclass
class AccountRequest:
    username: str
    password: str
    display_name: Optional[str] = None


@dataclass
class ProvisionOutcome:
    """Terminal state of one account's saga."""

    username: str
    state: ProvisionState
    identity_id: Optional[str] = None
    error: Optional[HubError] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is ProvisionState.COMMITTED

    @property
    def reason(self) -> str:
        return f"{self.username or 'unknown'}: {self.error.message if self.error else 'ok'}"


@dataclass
class BulkResult:
    created: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class StoreTimeout(DependencyFailure):
    """A store call overran its deadline and has since settled.

    ``completed`` is True when the late call went through anyway, with its
    return value in ``result``.
    """

    def __init__(self, step: str, completed: bool = False, result=None):
        super().__init__(f"{step} timed out")
        self.completed = completed
        self.result = result


class _Saga:
    """Compensation stack for a single account."""

    def __init__(self, username: str):
        self.username = username
        self._compensations: List[tuple] = []

    def on_failure(self, name: str, action: Callable[[], Awaitable[None]]) -> None:
        self._compensations.append((name, action))

    async def compensate(self) -> bool:
        """Run compensations newest first; returns False if any of them failed."""
        clean = True
        while self._compensations:
            name, action = self._compensations.pop()
            try:
                await action()
                logger.info("compensated %s for %s", name, self.username)
            except HubError as exc:
                if isinstance(exc, StoreTimeout) and exc.completed:
                    logger.warning("compensation %s for %s was slow", name, self.username)
                    continue
                clean = False
                logger.error(
                    "compensation %s failed for %s; manual cleanup needed",
                    name,
                    self.username,
                    exc_info=True,
                )
        return clean


class ProvisioningPipeline:
    """Creates identity, profile and role grant as one logical unit."""

    def __init__(self, timeout: Optional[float] = None, concurrency: Optional[int] = None):
        self._timeout = timeout or settings.store_timeout_seconds
        self._concurrency = concurrency or settings.bulk_concurrency

    async def _call_store(self, step: str, func, *args):
        call = asyncio.ensure_future(asyncio.to_thread(func, *args))
        try:
            return await asyncio.wait_for(asyncio.shield(call), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("%s exceeded %ss, waiting for it to settle", step, self._timeout)
        try:
            result = await asyncio.shield(call)
        except HubError as exc:
            raise StoreTimeout(step) from exc
        raise StoreTimeout(step, completed=True, result=result)

    async def authorize(self, caller_id: Optional[str]) -> None:
        """Require the caller to hold the admin role in the role grant table."""
        if not caller_id:
            raise Forbidden("Admin access required")
        role = await self._call_store("AuthorizationCheck", services.resolve_role, caller_id)
        if role != services.ROLE_ADMIN:
            raise Forbidden("Admin access required")

    async def _validate(self, request: AccountRequest) -> str:
        username = (request.username or "").strip().lower()
        if not username:
            raise ValidationError("Username is required")
        if not request.password:
            raise ValidationError("Password is required")
        if "@" in username or any(ch.isspace() for ch in username):
            raise ValidationError(f"Invalid username {request.username!r}")
        if await self._call_store("ValidateInput", services.username_taken, username):
            raise ConflictError(f"Username {username} is already taken")
        return username

    async def _run(self, request: AccountRequest, role: str) -> ProvisionOutcome:
        raw_name = (request.username or "").strip()
        try:
            username = await self._validate(request)
        except HubError as exc:
            return self._finish(ProvisionOutcome(raw_name, ProvisionState.REJECTED, error=exc))

        saga = _Saga(username)
        try:
            identity_id = await self._call_store(
                "CreateIdentity",
                identity.create_identity,
                identity.login_for(username),
                request.password,
            )
        except HubError as exc:
            error = exc
            if isinstance(exc, StoreTimeout) and exc.completed:
                late_id = exc.result
                saga.on_failure(
                    "delete_identity",
                    lambda: self._call_store("RollbackIdentity", identity.delete_identity, late_id),
                )
                if not await saga.compensate():
                    error = DependencyFailure(
                        f"{exc.message}; identity {late_id} could not be removed"
                    )
            return self._finish(ProvisionOutcome(username, ProvisionState.REJECTED, error=error))

        saga.on_failure(
            "delete_identity",
            lambda: self._call_store("RollbackIdentity", identity.delete_identity, identity_id),
        )
        # Newest first: a profile that landed late goes before its identity.
        saga.on_failure(
            "delete_profile",
            lambda: self._call_store("RollbackProfile", services.delete_profile, identity_id),
        )
        try:
            await self._call_store(
                "CreateProfile",
                services.insert_profile,
                identity_id,
                username,
                (request.display_name or "").strip() or None,
            )
        except HubError as exc:
            if not await saga.compensate():
                exc = DependencyFailure(
                    f"{exc.message}; identity {identity_id} could not be removed"
                )
            return self._finish(
                ProvisionOutcome(username, ProvisionState.ROLLED_BACK, error=exc)
            )

        outcome = ProvisionOutcome(username, ProvisionState.COMMITTED, identity_id=identity_id)
        try:
            await self._call_store("CreateRoleGrant", services.insert_role_grant, identity_id, role)
        except StoreTimeout as exc:
            if not exc.completed:
                logger.warning("role grant %s timed out for %s", role, username)
                outcome.warnings.append(f"Role grant failed: {exc.message}")
        except HubError as exc:
            logger.warning(
                "role grant %s failed for %s, account keeps default role: %s",
                role,
                username,
                exc.message,
            )
            outcome.warnings.append(f"Role grant failed: {exc.message}")
        return self._finish(outcome)

    def _finish(self, outcome: ProvisionOutcome) -> ProvisionOutcome:
        PROVISION_OUTCOMES.labels(state=outcome.state.value).inc()
        if outcome.ok:
            logger.info("provisioned %s identity=%s", outcome.username, outcome.identity_id)
        else:
            logger.info(
                "provisioning %s ended %s: %s",
                outcome.username,
                outcome.state.value,
                outcome.error.message if outcome.error else "",
            )
        return outcome

    async def provision(
        self, caller_id: Optional[str], request: AccountRequest, role: str = services.ROLE_STUDENT
    ) -> ProvisionOutcome:
        """Provision one account, raising the failing step's error."""
        await self.authorize(caller_id)
        outcome = await self._run(request, role)
        if outcome.error is not None:
            raise outcome.error
        return outcome

    async def provision_bulk(
        self,
        caller_id: Optional[str],
        requests: Sequence[AccountRequest],
        abort: Optional[asyncio.Event] = None,
    ) -> BulkResult:
        """Provision every account independently and aggregate the results.

        Setting ``abort`` stops new accounts from starting; accounts already
        committed stay committed.
        """
        await self.authorize(caller_id)
        if not requests:
            raise ValidationError("Users array required")

        semaphore = asyncio.Semaphore(self._concurrency)

        async def one(request: AccountRequest) -> ProvisionOutcome:
            async with semaphore:
                if abort is not None and abort.is_set():
                    return ProvisionOutcome(
                        (request.username or "").strip(), ProvisionState.SKIPPED
                    )
                try:
                    return await self._run(request, services.ROLE_STUDENT)
                except Exception:
                    logger.exception("unexpected error provisioning %s", request.username)
                    return ProvisionOutcome(
                        request.username,
                        ProvisionState.REJECTED,
                        error=InternalError("Unexpected error"),
                    )

        outcomes = await asyncio.gather(*(one(r) for r in requests))

        result = BulkResult()
        for outcome in outcomes:
            if outcome.ok:
                result.created += 1
            elif outcome.state is ProvisionState.SKIPPED:
                result.skipped += 1
            else:
                result.failed += 1
                if len(result.errors) < settings.bulk_max_errors:
                    result.errors.append(outcome.reason)
        logger.info(
            "bulk provisioning done created=%d failed=%d skipped=%d",
            result.created,
            result.failed,
            result.skipped,
        )
        return result

    async def bootstrap_admin(self, username: str, password: str, setup_key: str) -> ProvisionOutcome:
        """Create the first admin account, gated by the configured setup key."""
        if not settings.setup_key or setup_key != settings.setup_key:
            raise Forbidden("Invalid setup key")
        if await self._call_store("AuthorizationCheck", services.admin_exists):
            raise ValidationError("Admin already exists")
        outcome = await self._run(
            AccountRequest(username=username, password=password, display_name="Administrator"),
            services.ROLE_ADMIN,
        )
        if outcome.error is not None:
            raise outcome.error
        return outcome
