"""
Order Lifecycle Service - the authoritative store's mutation path

Every status change goes through the same steps:
1. load the order fresh
2. check the actor is a party (system and compliance are exempt)
3. validate the edge, actor and escrow preconditions
4. compare-and-increment write on order_version
5. commit, then publish

Escrow RPCs (release/refund) run before the write transaction is opened so no
database transaction is held across the network call.
The returned transaction hash is committed on its own before the status write,
so a lost race on the status never loses the record of moved funds.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from database import async_managed_session
from models import (
    ActorType, Dispute, DisputeResolution, DisputeStatus, EscrowRecord, MempoolEntry,
    Order, OrderStatus, OrderType, PaymentMethod,
)
from services.escrow_client import EscrowClient
from services.order_event_publisher import OrderEventPublisher
from services.order_repository import escrow_flags, find_expired_orders, load_order, order_to_snapshot
from utils.datetime_helpers import utc_now
from utils.optimistic_locking import OptimisticLockManager
from utils.order_errors import (
    ExtensionNotAllowed, InvalidTransition, OptimisticLockingError, OrderNotFound, OrderSyncError,
)
from utils.order_events import OrderSnapshot
from utils.order_state_machine import (
    EXPIRABLE_STATUSES, STATUS_TIMEOUTS, EscrowFlags, OrderStateValidator, can_extend_order,
    get_expiry_outcome, get_extension_duration, get_status_timeout, get_timestamp_field,
    should_restore_liquidity,
)

logger = logging.getLogger(__name__)

EXPIRY_REASON = "Order expired (15 minute timeout)"
EXTENSION_DECLINED_REASON = "Extension declined"

_CLAIMABLE_STATUSES = {OrderStatus.PENDING.value, OrderStatus.ESCROWED.value}


def _status_updates(new_status: str, now: datetime) -> Dict[str, Any]:
    updates: Dict[str, Any] = {"status": new_status}
    field = get_timestamp_field(new_status)
    if field:
        updates[field] = now
    if new_status in STATUS_TIMEOUTS:
        updates["expires_at"] = now + get_status_timeout(new_status)
    # A status change supersedes any outstanding extension request
    updates["extension_requested_by"] = None
    updates["extension_minutes"] = None
    return updates


def _check_party(order: Order, actor_type: str, actor_id: Optional[str]) -> None:
    if actor_type in (ActorType.SYSTEM.value, ActorType.COMPLIANCE.value):
        return
    if actor_type == ActorType.USER.value and actor_id == order.user_id:
        return
    if actor_type == ActorType.MERCHANT.value and actor_id in (order.merchant_id, order.buyer_merchant_id):
        return
    raise InvalidTransition(
        f"{actor_type} {actor_id} is not a party to order {order.id}",
        from_status=order.status, actor=actor_type,
    )


def _acting_as(status: str, actor_type: str) -> str:
    # Only the system leaves releasing; a party's retry finishes the job on its behalf
    if status == OrderStatus.RELEASING.value:
        return ActorType.SYSTEM.value
    return actor_type


class OrderLifecycleService:
    """Validated, versioned order mutations with post-commit event publishing"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        publisher: Optional[OrderEventPublisher] = None,
        escrow_client: Optional[EscrowClient] = None,
    ):
        self.session_factory = session_factory
        self.publisher = publisher
        self.escrow_client = escrow_client

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _load(self, session: AsyncSession, order_id: str) -> Order:
        order = await load_order(session, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def _write(self, session: AsyncSession, order: Order, updates: Dict[str, Any]) -> OrderSnapshot:
        # Dependent rows (dispute, escrow) must be flushed before the reload picks them up
        await session.flush()
        await OptimisticLockManager(session).versioned_update(order.id, order.order_version, updates)
        refreshed = await load_order(session, order.id)
        return order_to_snapshot(refreshed)

    async def _publish_status(self, snapshot: OrderSnapshot, previous_status: str) -> None:
        if self.publisher is not None:
            await self.publisher.status_changed(snapshot, previous_status)

    async def _transition_in_session(
        self,
        session: AsyncSession,
        order: Order,
        new_status: str,
        actor_type: str,
        actor_id: Optional[str],
        extra: Optional[Dict[str, Any]] = None,
        escrow: Optional[EscrowFlags] = None,
    ) -> OrderSnapshot:
        OrderStateValidator.validate_transition(
            order.status, new_status, actor_type, escrow if escrow is not None else escrow_flags(order)
        )
        updates = _status_updates(new_status, utc_now())
        if extra:
            updates.update(extra)
        if new_status == OrderStatus.CANCELLED.value:
            updates.setdefault("cancelled_by", actor_type)
        previous_status = order.status
        snapshot = await self._write(session, order, updates)
        if should_restore_liquidity(previous_status, new_status):
            logger.info(f"💧 LIQUIDITY_RESTORED: order={order.id} merchant={order.merchant_id}")
        logger.info(
            f"✅ ORDER_TRANSITION: {order.id} {previous_status} -> {new_status} "
            f"by {actor_type}:{actor_id or '-'} v{snapshot.order_version}"
        )
        return snapshot

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_order(
        self,
        user_id: str,
        merchant_id: str,
        order_type: str,
        crypto_amount,
        fiat_amount,
        rate,
        payment_method: str = PaymentMethod.BANK.value,
        buyer_merchant_id: Optional[str] = None,
        corridor: Optional[str] = None,
        premium_bps: int = 0,
        auto_bump_enabled: bool = False,
        max_premium_bps: Optional[int] = None,
        bump_step_bps: Optional[int] = None,
        bump_interval_sec: Optional[int] = None,
    ) -> OrderSnapshot:
        """Create a pending order at version 1 and list it in the mempool"""
        if order_type not in {t.value for t in OrderType}:
            raise ValueError(f"Invalid order type: {order_type}")
        if payment_method not in {m.value for m in PaymentMethod}:
            raise ValueError(f"Invalid payment method: {payment_method}")
        if Decimal(str(crypto_amount)) <= 0 or Decimal(str(fiat_amount)) <= 0 or Decimal(str(rate)) <= 0:
            raise ValueError("Order amounts and rate must be positive")

        max_premium = Config.DEFAULT_MAX_PREMIUM_BPS if max_premium_bps is None else max_premium_bps
        if premium_bps < 0 or premium_bps > max_premium:
            raise ValueError(f"Premium {premium_bps}bps outside 0..{max_premium}")

        now = utc_now()
        order_id = str(uuid.uuid4())
        interval = bump_interval_sec or Config.DEFAULT_BUMP_INTERVAL_SEC

        async with async_managed_session(self.session_factory) as session:
            order = Order(
                id=order_id,
                order_number=f"ORD-{now:%y%m%d}-{uuid.uuid4().hex[:8].upper()}",
                type=order_type,
                crypto_amount=Decimal(str(crypto_amount)),
                fiat_amount=Decimal(str(fiat_amount)),
                rate=Decimal(str(rate)),
                payment_method=payment_method,
                user_id=user_id,
                merchant_id=merchant_id,
                buyer_merchant_id=buyer_merchant_id,
                status=OrderStatus.PENDING.value,
                order_version=1,
                created_at=now,
                expires_at=now + get_status_timeout(OrderStatus.PENDING.value),
                extension_count=0,
                max_extensions=Config.MAX_ORDER_EXTENSIONS,
            )
            session.add(order)
            session.add(MempoolEntry(
                order_id=order_id,
                corridor=corridor or Config.DEFAULT_CORRIDOR,
                premium_bps_base=premium_bps,
                premium_bps_current=premium_bps,
                max_premium_bps=max_premium,
                bump_step_bps=bump_step_bps or Config.DEFAULT_BUMP_STEP_BPS,
                bump_interval_sec=interval,
                auto_bump_enabled=auto_bump_enabled,
                next_bump_at=now + timedelta(seconds=interval) if auto_bump_enabled else None,
                created_at=now,
            ))
            await session.flush()
            snapshot = order_to_snapshot(await load_order(session, order_id))

        logger.info(f"🆕 ORDER_CREATED: {order_id} {order_type} {crypto_amount} @ {rate} user={user_id}")
        if self.publisher is not None:
            await self.publisher.order_created(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        order_id: str,
        new_status: str,
        actor_type: str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> OrderSnapshot:
        """Generic validated status change"""
        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            _check_party(order, actor_type, actor_id)
            previous_status = order.status
            extra = {"cancellation_reason": reason} if reason and new_status == OrderStatus.CANCELLED.value else None
            snapshot = await self._transition_in_session(session, order, new_status, actor_type, actor_id, extra)
        await self._publish_status(snapshot, previous_status)
        return snapshot

    async def accept_order(self, order_id: str, merchant_id: str) -> OrderSnapshot:
        """A merchant accepts an order; accepting someone else's pending or escrowed order claims it"""
        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            extra = None
            claiming = order.status in _CLAIMABLE_STATUSES and merchant_id != order.merchant_id
            if claiming:
                extra = {"merchant_id": merchant_id}
            else:
                _check_party(order, ActorType.MERCHANT.value, merchant_id)
            previous_status = order.status
            previous_merchant = order.merchant_id
            snapshot = await self._transition_in_session(
                session, order, OrderStatus.ACCEPTED.value, ActorType.MERCHANT.value, merchant_id, extra
            )
            if claiming:
                logger.info(f"🤝 ORDER_CLAIMED: {order_id} merchant {previous_merchant} -> {merchant_id}")
        await self._publish_status(snapshot, previous_status)
        return snapshot

    async def lock_escrow(
        self,
        order_id: str,
        actor_type: str,
        actor_id: Optional[str],
        tx_hash: str,
        escrow_address: Optional[str] = None,
        trade_pda: Optional[str] = None,
    ) -> OrderSnapshot:
        """Record the escrow lock reported by the escrow service and move to escrowed"""
        if not tx_hash:
            raise ValueError("Escrow lock requires a transaction hash")
        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            _check_party(order, actor_type, actor_id)
            previous_status = order.status
            OrderStateValidator.validate_transition(order.status, OrderStatus.ESCROWED.value, actor_type)

            record = order.escrow
            if record is None:
                record = EscrowRecord(order_id=order.id, created_at=utc_now())
                session.add(record)
            record.lock_tx_hash = tx_hash
            record.escrow_address = escrow_address or record.escrow_address
            record.trade_pda = trade_pda or record.trade_pda

            snapshot = await self._transition_in_session(
                session, order, OrderStatus.ESCROWED.value, actor_type, actor_id,
                escrow=EscrowFlags(locked=True),
            )
        await self._publish_status(snapshot, previous_status)
        return snapshot

    async def mark_paid(self, order_id: str, actor_type: str, actor_id: Optional[str]) -> OrderSnapshot:
        return await self.transition(order_id, OrderStatus.PAYMENT_SENT.value, actor_type, actor_id)

    async def _preflight(self, order_id: str, new_status: str, actor_type: str, actor_id: Optional[str],
                         assume: EscrowFlags) -> Tuple[Order, EscrowFlags]:
        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            _check_party(order, actor_type, actor_id)
            flags = escrow_flags(order)
            OrderStateValidator.validate_transition(
                order.status, new_status, _acting_as(order.status, actor_type), assume
            )
            return order, flags

    async def _record_escrow_tx(self, order_id: str, field: str, tx_hash: str) -> None:
        """Commit an escrow transaction hash on its own, before any status write that may fail"""
        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            setattr(order.escrow, field, tx_hash)
        logger.info(f"🔐 ESCROW_TX_RECORDED: order={order_id} {field}={tx_hash}")

    async def _enter_releasing(self, order_id: str, status: str, actor_type: str,
                               actor_id: Optional[str]) -> str:
        """payment_sent -> payment_confirmed -> releasing, each step committed and published"""
        confirmers = OrderStateValidator.get_allowed_actors(status, OrderStatus.PAYMENT_CONFIRMED.value)
        if status == OrderStatus.PAYMENT_SENT.value and actor_type in confirmers:
            status = (await self.transition(
                order_id, OrderStatus.PAYMENT_CONFIRMED.value, actor_type, actor_id
            )).status
        if status == OrderStatus.PAYMENT_CONFIRMED.value:
            status = (await self.transition(order_id, OrderStatus.RELEASING.value, ActorType.SYSTEM.value)).status
        return status

    async def confirm_and_release(self, order_id: str, actor_type: str, actor_id: Optional[str]) -> OrderSnapshot:
        """
        Release escrow (when locked) then complete the order.

        A funded order from payment_sent passes through payment_confirmed and
        sits in releasing while the escrow RPC runs. The release hash is
        committed before the completing write, so a retry after a failed write
        completes without a second release.
        """
        order, flags = await self._preflight(
            order_id, OrderStatus.COMPLETED.value, actor_type, actor_id,
            assume=EscrowFlags(locked=True, released=True),
        )
        if flags.locked and not flags.released:
            if self.escrow_client is None:
                raise InvalidTransition(
                    f"Cannot complete from '{order.status}' before the escrow release is confirmed",
                    from_status=order.status, to_status=OrderStatus.COMPLETED.value, actor=actor_type,
                )
            await self._enter_releasing(order_id, order.status, actor_type, actor_id)
            try:
                release_tx = await self.escrow_client.release(
                    order_id, order.escrow.escrow_address, order.escrow.trade_pda
                )
            except Exception as e:
                logger.error(f"❌ ESCROW_RELEASE_FAILED: order={order_id}: {e}")
                raise
            await self._record_escrow_tx(order_id, "release_tx_hash", release_tx)

        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            previous_status = order.status
            snapshot = await self._transition_in_session(
                session, order, OrderStatus.COMPLETED.value, _acting_as(order.status, actor_type), actor_id,
            )
        await self._publish_status(snapshot, previous_status)
        return snapshot

    async def cancel_order(self, order_id: str, actor_type: str, actor_id: Optional[str],
                           reason: Optional[str] = None) -> OrderSnapshot:
        """Cancel an order; refuses while escrow is locked without a refund"""
        return await self.transition(order_id, OrderStatus.CANCELLED.value, actor_type, actor_id, reason)

    async def refund_and_cancel(self, order_id: str, actor_type: str, actor_id: Optional[str],
                                reason: Optional[str] = None) -> OrderSnapshot:
        """Refund a locked escrow through the escrow service, then cancel"""
        order, flags = await self._preflight(
            order_id, OrderStatus.CANCELLED.value, actor_type, actor_id,
            assume=EscrowFlags(locked=True, refunded=True),
        )
        if flags.locked and not flags.refunded and not flags.released:
            if self.escrow_client is None:
                raise InvalidTransition(
                    f"Cannot cancel from '{order.status}' while escrow is locked; refund required first",
                    from_status=order.status, to_status=OrderStatus.CANCELLED.value, actor=actor_type,
                )
            refund_tx = await self.escrow_client.refund(
                order_id, order.escrow.escrow_address, order.escrow.trade_pda
            )
            await self._record_escrow_tx(order_id, "refund_tx_hash", refund_tx)

        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            previous_status = order.status
            extra = {"cancellation_reason": reason} if reason else None
            snapshot = await self._transition_in_session(
                session, order, OrderStatus.CANCELLED.value, actor_type, actor_id, extra,
            )
        await self._publish_status(snapshot, previous_status)
        return snapshot

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def _attach_dispute(self, session: AsyncSession, order: Order, raised_by: str, reason: str,
                        description: Optional[str]) -> None:
        dispute = order.dispute
        if dispute is None:
            dispute = Dispute(order_id=order.id)
            session.add(dispute)
        # A previously resolved dispute row is reopened
        dispute.raised_by = raised_by
        dispute.reason = reason
        dispute.description = description
        dispute.status = DisputeStatus.OPEN.value
        dispute.resolution = None
        dispute.resolution_notes = None
        dispute.previous_status = order.status
        dispute.created_at = utc_now()
        dispute.resolved_at = None

    async def open_dispute(self, order_id: str, actor_type: str, actor_id: Optional[str],
                           reason: str, description: Optional[str] = None) -> OrderSnapshot:
        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            _check_party(order, actor_type, actor_id)
            previous_status = order.status
            OrderStateValidator.validate_transition(order.status, OrderStatus.DISPUTED.value, actor_type)
            self._attach_dispute(session, order, actor_type, reason, description)
            snapshot = await self._transition_in_session(
                session, order, OrderStatus.DISPUTED.value, actor_type, actor_id
            )
        logger.warning(f"⚖️ DISPUTE_OPENED: order={order_id} by {actor_type} reason={reason}")
        await self._publish_status(snapshot, previous_status)
        return snapshot

    async def resolve_dispute(self, order_id: str, resolution: str,
                              actor_type: str = ActorType.COMPLIANCE.value,
                              notes: Optional[str] = None) -> OrderSnapshot:
        """
        Close a dispute.

        restore         -> back to the status held before the dispute (compliance only)
        force_complete  -> completed, releasing a locked escrow first
        force_cancel    -> cancelled, refunding a locked escrow first
        """
        try:
            resolution = DisputeResolution(resolution).value
        except ValueError:
            raise ValueError(f"Unknown dispute resolution: {resolution}")

        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            if order.status != OrderStatus.DISPUTED.value or order.dispute is None:
                raise InvalidTransition(
                    f"Order {order_id} has no open dispute",
                    from_status=order.status, actor=actor_type,
                )
            flags = escrow_flags(order)
            escrow_address = order.escrow.escrow_address if order.escrow is not None else None
            trade_pda = order.escrow.trade_pda if order.escrow is not None else None
            if resolution == DisputeResolution.RESTORE.value:
                target = order.dispute.previous_status
                OrderStateValidator.validate_dispute_restore(target, actor_type)
            else:
                target = (OrderStatus.COMPLETED.value if resolution == DisputeResolution.FORCE_COMPLETE.value
                          else OrderStatus.CANCELLED.value)
                OrderStateValidator.validate_transition(
                    order.status, target, actor_type, EscrowFlags(locked=True, released=True, refunded=True)
                )

        if flags.locked and not flags.released and not flags.refunded and self.escrow_client is not None:
            if resolution == DisputeResolution.FORCE_COMPLETE.value:
                tx_hash = await self.escrow_client.release(order_id, escrow_address, trade_pda)
                await self._record_escrow_tx(order_id, "release_tx_hash", tx_hash)
            elif resolution == DisputeResolution.FORCE_CANCEL.value:
                tx_hash = await self.escrow_client.refund(order_id, escrow_address, trade_pda)
                await self._record_escrow_tx(order_id, "refund_tx_hash", tx_hash)

        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            previous_status = order.status
            dispute = order.dispute
            dispute.status = DisputeStatus.RESOLVED.value
            dispute.resolution = resolution
            dispute.resolution_notes = notes
            dispute.resolved_at = utc_now()

            if resolution == DisputeResolution.RESTORE.value:
                now = utc_now()
                updates = {"status": target, "extension_requested_by": None, "extension_minutes": None}
                if target in STATUS_TIMEOUTS:
                    updates["expires_at"] = now + get_status_timeout(target)
                snapshot = await self._write(session, order, updates)
                logger.info(f"↩️ DISPUTE_RESTORED: order={order_id} -> {target} v{snapshot.order_version}")
            else:
                extra = {"cancellation_reason": f"Dispute resolved: {resolution}"} \
                    if target == OrderStatus.CANCELLED.value else None
                snapshot = await self._transition_in_session(
                    session, order, target, actor_type, None, extra,
                )
        logger.info(f"⚖️ DISPUTE_RESOLVED: order={order_id} resolution={resolution}")
        await self._publish_status(snapshot, previous_status)
        return snapshot

    # ------------------------------------------------------------------
    # Extensions
    # ------------------------------------------------------------------

    async def request_extension(self, order_id: str, actor_type: str, actor_id: str) -> OrderSnapshot:
        """Ask the counterparty for more time in the current status"""
        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            _check_party(order, actor_type, actor_id)
            if order.extension_requested_by:
                raise ExtensionNotAllowed(order_id, "An extension request is already pending")
            if order.expires_at is not None and order.expires_at <= utc_now():
                raise ExtensionNotAllowed(order_id, "Order has already passed its deadline")
            allowed, reason = can_extend_order(order.status, order.extension_count, order.max_extensions)
            if not allowed:
                raise ExtensionNotAllowed(order_id, reason)
            minutes = get_extension_duration(order.status)
            snapshot = await self._write(session, order, {
                "extension_requested_by": actor_type,
                "extension_minutes": minutes,
            })
        logger.info(f"⏳ EXTENSION_REQUESTED: order={order_id} by {actor_type} +{minutes}m")
        if self.publisher is not None:
            await self.publisher.extension_requested(snapshot)
        return snapshot

    async def respond_to_extension(self, order_id: str, actor_type: str, actor_id: str,
                                   accept: bool) -> OrderSnapshot:
        """
        Accept or decline a pending extension request.

        Accepting pushes expires_at forward by the requested minutes. Declining
        applies the expiry outcome: cancelled, or disputed once extensions are
        exhausted in a funded status or when a locked escrow blocks cancelling.
        """
        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            _check_party(order, actor_type, actor_id)
            if not order.extension_requested_by:
                raise ExtensionNotAllowed(order_id, "No extension request is pending")
            if order.extension_requested_by == actor_type:
                raise ExtensionNotAllowed(order_id, "Cannot respond to your own extension request")

            previous_status = order.status
            if accept:
                now = utc_now()
                base = order.expires_at if order.expires_at and order.expires_at > now else now
                snapshot = await self._write(session, order, {
                    "expires_at": base + timedelta(minutes=order.extension_minutes or get_extension_duration(order.status)),
                    "extension_count": order.extension_count + 1,
                    "extension_requested_by": None,
                    "extension_minutes": None,
                })
                logger.info(f"✅ EXTENSION_ACCEPTED: order={order_id} count={snapshot.extension_count}")
            else:
                outcome = get_expiry_outcome(order.status, order.extension_count, order.max_extensions)
                flags = escrow_flags(order)
                if outcome == OrderStatus.CANCELLED.value and (
                    not OrderStateValidator.is_valid_transition(order.status, outcome)
                    or (flags.locked and not flags.refunded)
                ):
                    outcome = OrderStatus.DISPUTED.value

                if outcome == OrderStatus.DISPUTED.value:
                    self._attach_dispute(session, order, ActorType.SYSTEM.value, "extension_declined",
                                         EXTENSION_DECLINED_REASON)
                    extra = None
                else:
                    extra = {"cancellation_reason": EXTENSION_DECLINED_REASON}
                snapshot = await self._transition_in_session(session, order, outcome, actor_type, actor_id, extra)
                logger.info(f"❌ EXTENSION_DECLINED: order={order_id} -> {outcome}")

        if self.publisher is not None:
            await self.publisher.extension_responded(snapshot, accept)
            if snapshot.status != previous_status:
                await self.publisher.status_changed(snapshot, previous_status)
        return snapshot

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def expire_order(self, order_id: str, now: Optional[datetime] = None) -> Optional[OrderSnapshot]:
        """Expire one overdue order; returns None when it no longer qualifies"""
        now = now or utc_now()
        async with async_managed_session(self.session_factory) as session:
            order = await self._load(session, order_id)
            if order.status not in EXPIRABLE_STATUSES or order.expires_at is None or order.expires_at >= now:
                return None
            previous_status = order.status
            snapshot = await self._transition_in_session(
                session, order, OrderStatus.EXPIRED.value, ActorType.SYSTEM.value, None,
                {"cancelled_by": ActorType.SYSTEM.value, "cancellation_reason": EXPIRY_REASON},
            )
        await self._publish_status(snapshot, previous_status)
        return snapshot

    async def expire_overdue_orders(self, now: Optional[datetime] = None,
                                    batch_size: Optional[int] = None) -> Dict[str, Any]:
        """
        Expire up to batch_size overdue orders, oldest deadline first.

        Database errors selecting the batch propagate so the caller can back off;
        per-order failures are recorded and the batch continues.
        """
        now = now or utc_now()
        results = {"processed": 0, "expired": [], "skipped": 0, "errors": []}

        async with async_managed_session(self.session_factory) as session:
            candidates = await find_expired_orders(session, now, batch_size or Config.EXPIRY_BATCH_SIZE)
            order_ids = [order.id for order in candidates]

        for order_id in order_ids:
            results["processed"] += 1
            try:
                snapshot = await self.expire_order(order_id, now)
            except (OptimisticLockingError, InvalidTransition, OrderNotFound) as e:
                # Someone else moved the order first; it is no longer ours to expire
                results["skipped"] += 1
                logger.info(f"⏭️ EXPIRY_SKIPPED: order={order_id}: {e}")
                continue
            except OrderSyncError as e:
                results["errors"].append({"order_id": order_id, "error": str(e)})
                logger.error(f"❌ EXPIRY_FAILED: order={order_id}: {e}")
                continue
            if snapshot is None:
                results["skipped"] += 1
            else:
                results["expired"].append(order_id)

        if results["expired"]:
            logger.info(f"⏰ EXPIRY_BATCH: expired {len(results['expired'])}/{results['processed']} orders")
        return results
