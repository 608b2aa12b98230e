"""Contract service - orchestrates the direct debit contract lifecycle.

Every operation follows the same order: validate input, talk to the gateway,
then write the resulting rows and audit events in a single unit of work.
Nothing is written before the gateway has answered, except the bookkeeping
that records a declined or failed attempt.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from billing_api.config import Settings, get_settings
from billing_api.database import unit_of_work, utcnow
from billing_api.errors import (
    ErrorCode,
    NotFound,
    Conflict,
    ValidationFailed,
    UpstreamUnavailable,
)
from billing_api.metrics import record_contract_transition
from billing_api.models import (
    User,
    PaymentMethod,
    ContractStatus,
    DIRECT_DEBIT_CONTRACT,
    BillingEvent,
    BillingEventType,
    Severity,
    Subscription,
)
from billing_api.schemas.contract import EXPIRE_AT_FORMAT, MOBILE_PATTERN, NATIONAL_ID_PATTERN
from billing_api.services.contract_cookie import ContractCookieCodec
from billing_api.services.gateway import (
    Bank,
    GatewayClient,
    GatewayConfigurationError,
    GatewayError,
    signing_url_template,
)
from billing_api.services.signature_cipher import SignatureCipher, SignatureCipherError

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/payment-methods/contracts/callback"

_MOBILE_RE = re.compile(MOBILE_PATTERN)
_NATIONAL_ID_RE = re.compile(NATIONAL_ID_PATTERN)


@dataclass
class ContractCreation:
    """A freshly requested contract waiting for the user to sign at the bank."""

    payment_method: PaymentMethod
    payman_authority: str
    banks: list[Bank]
    signing_url_template: str


@dataclass
class VerificationResult:
    signature: str
    payment_method: PaymentMethod
    idempotent: bool = False


@dataclass
class CancellationResult:
    payment_method_id: str
    gateway_cancelled: bool
    gateway_error: str | None = None


@dataclass
class CallbackResult:
    """Outcome of the public bank callback. Never carries the signature."""

    success: bool
    message: str
    persisted: bool = False
    payment_method_id: str | None = None
    idempotent: bool = False


@dataclass
class RecoveryResult:
    payment_method: PaymentMethod
    recovered: bool


@dataclass
class DefaultChange:
    payment_method_id: str
    changed: bool
    previous_default_id: str | None = None


@dataclass
class ContractSummary:
    """What the user's payment methods mean for their ability to pay."""

    status: str
    can_make_payments: bool
    needs_setup: bool
    message: str
    contract_id: str | None = None
    expires_at: datetime | None = None
    verified_at: datetime | None = None


def _upstream_error(error: GatewayError) -> UpstreamUnavailable:
    """Map a gateway failure onto the API error the caller should see."""
    if isinstance(error, GatewayConfigurationError) or error.is_auth_error:
        return UpstreamUnavailable(code=ErrorCode.GATEWAY_MISCONFIGURED)
    return UpstreamUnavailable(zarinpal_code=error.code)


class ContractService:
    """Service for creating, verifying, cancelling and selecting direct debit contracts."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: GatewayClient,
        cipher: SignatureCipher,
        cookies: ContractCookieCodec,
        settings: Settings | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.cipher = cipher
        self.cookies = cookies
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get_banks(self) -> list[Bank]:
        """Banks that can sign contracts. An empty list counts as a gateway failure."""
        try:
            banks = await self.gateway.get_bank_list()
        except GatewayError as e:
            raise _upstream_error(e) from e

        if not banks:
            logger.warning("Gateway returned an empty bank list")
            raise UpstreamUnavailable(message="No banks are available for direct debit contracts")
        return banks

    async def list_payment_methods(self, user: User) -> list[PaymentMethod]:
        stmt = (
            select(PaymentMethod)
            .where(PaymentMethod.user_id == user.id)
            .order_by(PaymentMethod.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def contract_status(self, user: User) -> ContractSummary:
        """
        Summarise the user's direct debit setup.

        Resolution order: an active signed contract wins (reported as expired
        once past its expiry), then a pending one, then a cancelled one.
        Anything else is invalid.
        """
        contracts = [
            pm for pm in await self.list_payment_methods(user)
            if pm.contract_type == DIRECT_DEBIT_CONTRACT
        ]
        if not contracts:
            return ContractSummary(
                status=ContractStatus.NO_CONTRACT.value,
                can_make_payments=False,
                needs_setup=True,
                message="Set up a direct debit contract to start a subscription.",
            )

        active = next(
            (
                pm for pm in sorted(contracts, key=lambda pm: not pm.is_primary)
                if pm.is_active and pm.contract_status == ContractStatus.ACTIVE.value and pm.has_signature
            ),
            None,
        )
        if active is not None:
            if active.contract_expires_at and active.contract_expires_at < utcnow():
                return ContractSummary(
                    status=ContractStatus.EXPIRED.value,
                    contract_id=active.id,
                    can_make_payments=False,
                    needs_setup=True,
                    expires_at=active.contract_expires_at,
                    message="Your direct debit contract has expired. Create a new one.",
                )
            return ContractSummary(
                status=ContractStatus.ACTIVE.value,
                contract_id=active.id,
                can_make_payments=True,
                needs_setup=False,
                expires_at=active.contract_expires_at,
                verified_at=active.contract_verified_at,
                message="Direct debit contract is active.",
            )

        for status, message in (
            (ContractStatus.PENDING, "Direct debit contract is waiting for your signature."),
            (ContractStatus.CANCELLED, "Direct debit contract was cancelled. Create a new one."),
        ):
            match = next((pm for pm in contracts if pm.contract_status == status.value), None)
            if match is not None:
                return ContractSummary(
                    status=status.value,
                    contract_id=match.id,
                    can_make_payments=False,
                    needs_setup=True,
                    message=message,
                )

        return ContractSummary(
            status=ContractStatus.INVALID.value,
            can_make_payments=False,
            needs_setup=True,
            message="Direct debit contract state is unknown. Please contact support.",
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def _validate_request(
        self,
        mobile: str,
        national_id: str | None,
        expire_at: datetime,
        max_daily_count: int,
        max_monthly_count: int,
        max_amount: int,
    ) -> None:
        if not _MOBILE_RE.match(mobile or ""):
            raise ValidationFailed(code=ErrorCode.INVALID_FIELD, field="mobile",
                                   message="Mobile number must look like 09xxxxxxxxx")
        if national_id and not _NATIONAL_ID_RE.match(national_id):
            raise ValidationFailed(code=ErrorCode.INVALID_FIELD, field="national_id",
                                   message="National ID must be exactly 10 digits")

        earliest = utcnow() + timedelta(days=self.settings.min_contract_days)
        if expire_at < earliest:
            raise ValidationFailed(
                code=ErrorCode.INVALID_FIELD,
                field="expire_at",
                message=f"Contract must stay valid for at least {self.settings.min_contract_days} days",
            )

        for name, value in (
            ("max_daily_count", max_daily_count),
            ("max_monthly_count", max_monthly_count),
            ("max_amount", max_amount),
        ):
            if value <= 0:
                raise ValidationFailed(code=ErrorCode.INVALID_FIELD, field=name,
                                       message=f"{name} must be a positive integer")

    @staticmethod
    def _check_bank_limits(banks: list[Bank], max_amount: int, max_daily_count: int) -> None:
        """Reject limits that no bank would accept."""
        highest_amount = max(bank.max_daily_amount for bank in banks)
        if max_amount > highest_amount:
            raise ValidationFailed(
                code=ErrorCode.LIMIT_EXCEEDED,
                field="max_amount",
                message=f"max_amount exceeds the highest bank limit of {highest_amount}",
            )

        counts = [bank.max_daily_count for bank in banks if bank.max_daily_count is not None]
        if counts and max_daily_count > max(counts):
            raise ValidationFailed(
                code=ErrorCode.LIMIT_EXCEEDED,
                field="max_daily_count",
                message=f"max_daily_count exceeds the highest bank limit of {max(counts)}",
            )

    async def create_contract(
        self,
        user: User,
        mobile: str,
        national_id: str | None,
        expire_at: datetime,
        max_daily_count: int,
        max_monthly_count: int,
        max_amount: int,
    ) -> ContractCreation:
        """
        Request a new contract from the gateway and record it as pending.

        Banks are fetched first so limits can be checked before the gateway is
        asked for an authority.
        """
        user_id = user.id
        if expire_at.tzinfo is not None:
            expire_at = expire_at.astimezone(timezone.utc).replace(tzinfo=None)
        self._validate_request(mobile, national_id, expire_at, max_daily_count, max_monthly_count, max_amount)

        banks = await self.get_banks()
        self._check_bank_limits(banks, max_amount, max_daily_count)

        try:
            authority = await self.gateway.request_contract(
                mobile=mobile,
                national_id=national_id,
                expire_at=expire_at.strftime(EXPIRE_AT_FORMAT),
                max_daily_count=max_daily_count,
                max_monthly_count=max_monthly_count,
                max_amount=max_amount,
                callback_url=self.settings.app_url.rstrip("/") + CALLBACK_PATH,
            )
        except GatewayError as e:
            raise _upstream_error(e) from e

        payment_method = PaymentMethod(
            user_id=user_id,
            contract_type=DIRECT_DEBIT_CONTRACT,
            contract_status=ContractStatus.PENDING.value,
            payman_authority=authority,
            contract_mobile=mobile,
            max_daily_amount=max_amount,
            max_daily_count=max_daily_count,
            max_monthly_count=max_monthly_count,
            contract_expires_at=expire_at,
            is_active=False,
            is_primary=False,
        )
        async with unit_of_work(self.db):
            self.db.add(payment_method)
            await self.db.flush()
            self.db.add(BillingEvent(
                user_id=user_id,
                payment_method_id=payment_method.id,
                event_type=BillingEventType.CONTRACT_REQUESTED.value,
                event_data={
                    "payman_authority": authority,
                    "max_amount": max_amount,
                    "max_daily_count": max_daily_count,
                    "max_monthly_count": max_monthly_count,
                    "expire_at": expire_at.strftime(EXPIRE_AT_FORMAT),
                },
            ))

        record_contract_transition("no_contract->pending")
        logger.info(
            "Direct debit contract requested",
            extra={"user_id": user_id, "payment_method_id": payment_method.id, "payman_authority": authority},
        )

        return ContractCreation(
            payment_method=payment_method,
            payman_authority=authority,
            banks=banks,
            signing_url_template=signing_url_template(authority),
        )

    # ------------------------------------------------------------------
    # Verify / callback / recover
    # ------------------------------------------------------------------

    async def verify_contract(
        self,
        user: User,
        contract_id: str,
        payman_authority: str,
        status: str,
    ) -> VerificationResult:
        """Confirm a signed contract with the gateway and store it as an active payment method."""
        user_id = user.id
        contract = await self._get_owned(user_id, contract_id)
        if contract is None or contract.payman_authority != payman_authority:
            raise NotFound(code=ErrorCode.CONTRACT_NOT_FOUND)
        if contract.contract_status == ContractStatus.INVALID.value:
            # A declined or failed attempt stays invalid; the user starts over
            raise ValidationFailed(
                code=ErrorCode.CONTRACT_NOT_ACTIVE,
                message="This contract request was declined or failed and cannot be verified",
                hint="Create a new contract to add a direct debit payment method.",
            )

        if status != "OK":
            await self._mark_invalid(
                user_id, payman_authority, BillingEventType.CONTRACT_DECLINED, {"status": status}
            )
            raise ValidationFailed(code=ErrorCode.SIGNING_NOT_SUCCESSFUL)

        try:
            signature = await self.gateway.verify_contract(payman_authority)
        except GatewayError as e:
            await self._mark_invalid(
                user_id,
                payman_authority,
                BillingEventType.CONTRACT_VERIFICATION_FAILED,
                {"error": e.message, "zarinpal_code": e.code},
                severity=Severity.ERROR,
            )
            raise _upstream_error(e) from e

        payment_method, idempotent = await self._persist_verified(
            user_id, payman_authority, signature, BillingEventType.CONTRACT_VERIFIED
        )
        return VerificationResult(signature=signature, payment_method=payment_method, idempotent=idempotent)

    async def public_callback(
        self,
        payman_authority: str,
        status: str,
        session_user: User | None = None,
        cookie_value: str | None = None,
    ) -> CallbackResult:
        """
        Handle the bank redirect. Never raises.

        The user comes from the session when there is one, otherwise from the
        pending-contract cookie issued for this very authority. Without a user
        the contract is only confirmed, not stored.
        """
        try:
            return await self._handle_callback(payman_authority, status, session_user, cookie_value)
        except Exception:
            logger.exception("Contract callback failed", extra={"payman_authority": payman_authority})
            await self.db.rollback()
            return CallbackResult(success=False, message="The contract could not be confirmed. Please try again.")

    async def _handle_callback(
        self,
        payman_authority: str,
        status: str,
        session_user: User | None,
        cookie_value: str | None,
    ) -> CallbackResult:
        if session_user is not None:
            user_id = session_user.id
        else:
            user_id = self.cookies.resolve_user_id(cookie_value, payman_authority)
            if user_id is not None and not await self._is_active_user(user_id):
                logger.warning("Pending-contract cookie names an unknown or inactive user")
                user_id = None

        if status != "OK":
            if user_id is not None:
                await self._mark_invalid(
                    user_id, payman_authority, BillingEventType.CONTRACT_DECLINED,
                    {"status": status, "source": "callback"},
                )
            return CallbackResult(success=False, message="Contract signing was not successful.")

        if user_id is not None and await self._is_invalidated(user_id, payman_authority):
            logger.warning(
                "Callback for an invalidated contract ignored",
                extra={"user_id": user_id, "payman_authority": payman_authority},
            )
            return CallbackResult(success=False, message="This contract request is no longer valid. Create a new contract.")

        try:
            signature = await self.gateway.verify_contract(payman_authority)
        except GatewayError as e:
            if user_id is not None:
                await self._mark_invalid(
                    user_id,
                    payman_authority,
                    BillingEventType.CONTRACT_VERIFICATION_FAILED,
                    {"error": e.message, "zarinpal_code": e.code, "source": "callback"},
                    severity=Severity.ERROR,
                )
            return CallbackResult(success=False, message="The bank could not confirm the contract.")

        if user_id is None:
            return CallbackResult(
                success=True,
                message="Contract verified. Sign in to finish adding it to your account.",
            )

        payment_method, idempotent = await self._persist_verified(
            user_id, payman_authority, signature, BillingEventType.CONTRACT_VERIFIED
        )
        return CallbackResult(
            success=True,
            persisted=True,
            payment_method_id=payment_method.id,
            idempotent=idempotent,
            message="Direct debit contract is active.",
        )

    async def recover_contract(self, user: User, payman_authority: str) -> RecoveryResult:
        """Re-run verification for an authority whose payment method never got stored."""
        user_id = user.id
        try:
            signature = await self.gateway.verify_contract(payman_authority)
        except GatewayError as e:
            raise _upstream_error(e) from e

        payment_method, idempotent = await self._persist_verified(
            user_id,
            payman_authority,
            signature,
            BillingEventType.PAYMENT_METHOD_RECOVERED,
            idempotent_event=BillingEventType.PAYMENT_METHOD_RECOVERY_IDEMPOTENT,
        )
        return RecoveryResult(payment_method=payment_method, recovered=not idempotent)

    async def _persist_verified(
        self,
        user_id: str,
        payman_authority: str,
        signature: str,
        event_type: BillingEventType,
        idempotent_event: BillingEventType | None = None,
    ) -> tuple[PaymentMethod, bool]:
        """
        Store a verified signature exactly once per user.

        Returns (payment_method, idempotent). A signature that is already
        stored returns the existing row. A concurrent writer that wins the
        unique constraint is treated the same way.
        """
        signature_hash = self.cipher.hash(signature)

        existing = await self._find_active_by_hash(user_id, signature_hash)
        if existing is not None:
            await self._reconcile_duplicate(existing, payman_authority, idempotent_event)
            return existing, True

        try:
            encrypted = self.cipher.encrypt(signature)
        except SignatureCipherError as e:
            logger.error(
                "Gateway returned a malformed contract signature",
                extra={"user_id": user_id, "payman_authority": payman_authority, "signature_length": len(signature)},
            )
            raise UpstreamUnavailable(
                message="The payment gateway returned an unusable contract signature",
            ) from e

        try:
            async with unit_of_work(self.db):
                payment_method = await self._activate(user_id, payman_authority, encrypted, event_type)
        except IntegrityError:
            winner = await self._find_active_by_hash(user_id, signature_hash)
            if winner is None:
                raise
            logger.info(
                "Concurrent verification already stored this contract",
                extra={"user_id": user_id, "payment_method_id": winner.id},
            )
            await self._reconcile_duplicate(winner, payman_authority, idempotent_event)
            return winner, True

        record_contract_transition("pending->active")
        logger.info(
            "Direct debit contract activated",
            extra={
                "user_id": user_id,
                "payment_method_id": payment_method.id,
                "signature_hash_prefix": signature_hash[:12],
                "is_primary": payment_method.is_primary,
            },
        )
        return payment_method, False

    async def _activate(self, user_id, payman_authority, encrypted, event_type) -> PaymentMethod:
        await self._lock_user(user_id)
        now = utcnow()
        values = {
            "contract_status": ContractStatus.ACTIVE.value,
            "contract_signature_encrypted": encrypted.encrypted,
            "contract_signature_hash": encrypted.hash,
            "contract_verified_at": now,
            "is_active": True,
            "is_primary": False,
            "updated_at": now,
        }

        payment_method = None
        pending = await self._find_pending(user_id, payman_authority)
        if pending is not None:
            # Only the writer that still sees the row pending may activate it
            result = await self.db.execute(
                update(PaymentMethod)
                .where(PaymentMethod.id == pending.id)
                .where(PaymentMethod.contract_status == ContractStatus.PENDING.value)
                .values(**values)
            )
            if result.rowcount == 1:
                await self.db.refresh(pending)
                payment_method = pending

        if payment_method is None:
            payment_method = PaymentMethod(
                user_id=user_id,
                contract_type=DIRECT_DEBIT_CONTRACT,
                payman_authority=payman_authority,
                **values,
            )
            self.db.add(payment_method)
            await self.db.flush()

        if await self._claim_primary(user_id, payment_method.id):
            await self.db.refresh(payment_method)

        self.db.add(BillingEvent(
            user_id=user_id,
            payment_method_id=payment_method.id,
            event_type=event_type.value,
            event_data={
                "payman_authority": payman_authority,
                "contract_signature_hash": encrypted.hash,
                "is_primary": payment_method.is_primary,
            },
        ))
        return payment_method

    async def _reconcile_duplicate(
        self,
        existing: PaymentMethod,
        payman_authority: str,
        idempotent_event: BillingEventType | None,
    ) -> None:
        """Drop a leftover pending row for the authority and note the idempotent hit."""
        async with unit_of_work(self.db):
            await self.db.execute(
                delete(PaymentMethod)
                .where(PaymentMethod.user_id == existing.user_id)
                .where(PaymentMethod.payman_authority == payman_authority)
                .where(PaymentMethod.contract_status == ContractStatus.PENDING.value)
                .where(PaymentMethod.id != existing.id)
            )
            if idempotent_event is not None:
                self.db.add(BillingEvent(
                    user_id=existing.user_id,
                    payment_method_id=existing.id,
                    event_type=idempotent_event.value,
                    event_data={
                        "payman_authority": payman_authority,
                        "contract_signature_hash": existing.contract_signature_hash,
                    },
                ))

        logger.info(
            "Contract already stored, returning existing payment method",
            extra={"user_id": existing.user_id, "payment_method_id": existing.id},
        )

    async def _mark_invalid(
        self,
        user_id: str,
        payman_authority: str,
        event_type: BillingEventType,
        event_data: dict,
        severity: Severity = Severity.WARNING,
    ) -> None:
        """Move the pending row for an authority to invalid, if it is still pending."""
        pending = await self._find_pending(user_id, payman_authority)
        if pending is None:
            return

        async with unit_of_work(self.db):
            result = await self.db.execute(
                update(PaymentMethod)
                .where(PaymentMethod.id == pending.id)
                .where(PaymentMethod.contract_status == ContractStatus.PENDING.value)
                .values(contract_status=ContractStatus.INVALID.value, updated_at=utcnow())
            )
            if result.rowcount == 1:
                self.db.add(BillingEvent(
                    user_id=user_id,
                    payment_method_id=pending.id,
                    event_type=event_type.value,
                    event_data={"payman_authority": payman_authority, **event_data},
                    severity=severity.value,
                ))

        record_contract_transition("pending->invalid")
        logger.warning(
            "Direct debit contract marked invalid",
            extra={"user_id": user_id, "payment_method_id": pending.id, "event_type": event_type.value},
        )

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel_contract(self, user: User, payment_method_id: str) -> CancellationResult:
        """
        Cancel a contract at the gateway and hard-delete its payment method.

        The gateway outcome never blocks the local removal; it is recorded in
        the audit event instead.
        """
        user_id = user.id
        payment_method = await self._get_owned(user_id, payment_method_id)
        if payment_method is None:
            raise NotFound()
        if payment_method.contract_type != DIRECT_DEBIT_CONTRACT or not payment_method.has_signature:
            raise ValidationFailed(code=ErrorCode.NOT_DIRECT_DEBIT)
        if await self._has_active_subscription(payment_method.id):
            raise Conflict()

        gateway_error = None
        try:
            signature = self.cipher.decrypt(payment_method.contract_signature_encrypted)
            await self.gateway.cancel_contract(signature)
        except (GatewayError, SignatureCipherError) as e:
            gateway_error = str(e)
            logger.warning(
                "Gateway cancellation failed, removing payment method locally",
                extra={"user_id": user_id, "payment_method_id": payment_method.id, "error": gateway_error},
            )
        gateway_cancelled = gateway_error is None

        async with unit_of_work(self.db):
            self.db.add(BillingEvent(
                user_id=user_id,
                payment_method_id=payment_method.id,
                event_type=BillingEventType.PAYMENT_METHOD_HARD_DELETED.value,
                event_data={
                    "payment_method_id": payment_method.id,
                    "contract_signature_hash": payment_method.contract_signature_hash,
                    "contract_display_name": payment_method.contract_display_name,
                    "contract_mobile": payment_method.contract_mobile,
                    "deletion_reason": "user_requested",
                    "zarinpal_cancellation_success": gateway_cancelled,
                    "zarinpal_error": gateway_error,
                },
                severity=(Severity.INFO if gateway_cancelled else Severity.WARNING).value,
            ))
            await self.db.execute(
                delete(PaymentMethod)
                .where(PaymentMethod.id == payment_method.id)
                .where(PaymentMethod.user_id == user_id)
            )

        record_contract_transition("active->cancelled")
        logger.info(
            "Direct debit contract cancelled",
            extra={"user_id": user_id, "payment_method_id": payment_method_id, "gateway_cancelled": gateway_cancelled},
        )
        return CancellationResult(
            payment_method_id=payment_method_id,
            gateway_cancelled=gateway_cancelled,
            gateway_error=gateway_error,
        )

    # ------------------------------------------------------------------
    # Default payment method
    # ------------------------------------------------------------------

    async def set_default(self, user: User, payment_method_id: str) -> DefaultChange:
        """Make an active contract the user's only primary payment method."""
        user_id = user.id
        target = await self._get_owned(user_id, payment_method_id)
        if target is None:
            raise NotFound()
        if not (
            target.is_active
            and target.contract_status == ContractStatus.ACTIVE.value
            and target.has_signature
        ):
            raise ValidationFailed(code=ErrorCode.CONTRACT_NOT_ACTIVE)
        if target.is_primary:
            return DefaultChange(payment_method_id=target.id, changed=False, previous_default_id=target.id)

        async with unit_of_work(self.db):
            await self._lock_user(user_id)
            result = await self.db.execute(
                select(PaymentMethod.id)
                .where(PaymentMethod.user_id == user_id)
                .where(PaymentMethod.is_primary == True)
            )
            previous_id = result.scalars().first()

            now = utcnow()
            await self.db.execute(
                update(PaymentMethod)
                .where(PaymentMethod.user_id == user_id)
                .where(PaymentMethod.id != target.id)
                .where(PaymentMethod.is_primary == True)
                .values(is_primary=False, updated_at=now)
            )
            target.is_primary = True
            target.last_used_at = now
            self.db.add(BillingEvent(
                user_id=user_id,
                payment_method_id=target.id,
                event_type=BillingEventType.DEFAULT_PAYMENT_METHOD_CHANGED.value,
                event_data={
                    "previous_default_id": previous_id,
                    "new_default_id": target.id,
                },
            ))

        logger.info(
            "Default payment method changed",
            extra={"user_id": user_id, "payment_method_id": payment_method_id, "previous_default_id": previous_id},
        )
        return DefaultChange(payment_method_id=payment_method_id, changed=True, previous_default_id=previous_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _get_owned(self, user_id: str, payment_method_id: str) -> PaymentMethod | None:
        stmt = (
            select(PaymentMethod)
            .where(PaymentMethod.id == payment_method_id)
            .where(PaymentMethod.user_id == user_id)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_pending(self, user_id: str, payman_authority: str) -> PaymentMethod | None:
        stmt = (
            select(PaymentMethod)
            .where(PaymentMethod.user_id == user_id)
            .where(PaymentMethod.payman_authority == payman_authority)
            .where(PaymentMethod.contract_status == ContractStatus.PENDING.value)
            .order_by(PaymentMethod.created_at.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _is_invalidated(self, user_id: str, payman_authority: str) -> bool:
        """True when the latest attempt for this authority was declined or failed."""
        stmt = (
            select(PaymentMethod.contract_status)
            .where(PaymentMethod.user_id == user_id)
            .where(PaymentMethod.payman_authority == payman_authority)
            .order_by(PaymentMethod.created_at.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none() == ContractStatus.INVALID.value

    async def _find_active_by_hash(self, user_id: str, signature_hash: str) -> PaymentMethod | None:
        stmt = (
            select(PaymentMethod)
            .where(PaymentMethod.user_id == user_id)
            .where(PaymentMethod.contract_signature_hash == signature_hash)
            .where(PaymentMethod.contract_status == ContractStatus.ACTIVE.value)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_user(self, user_id: str) -> None:
        """Serialize primary-flag writes per user. SQLite ignores FOR UPDATE and serializes all writers."""
        await self.db.execute(select(User.id).where(User.id == user_id).with_for_update())

    async def _claim_primary(self, user_id: str, payment_method_id: str) -> bool:
        """
        Make the payment method primary unless another active one already is.

        The check and the write are one statement, so two activations for the
        same user can never both see "no primary yet".
        """
        other = aliased(PaymentMethod)
        has_other_primary = (
            select(other.id)
            .where(other.user_id == user_id)
            .where(other.id != payment_method_id)
            .where(other.is_primary == True)
            .where(other.is_active == True)
            .exists()
        )
        result = await self.db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.id == payment_method_id)
            .where(~has_other_primary)
            .values(is_primary=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _has_active_subscription(self, payment_method_id: str) -> bool:
        stmt = (
            select(Subscription.id)
            .where(Subscription.payment_method_id == payment_method_id)
            .where(Subscription.status == "active")
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def _is_active_user(self, user_id: str) -> bool:
        stmt = select(User.id).where(User.id == user_id).where(User.is_active == True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none() is not None
