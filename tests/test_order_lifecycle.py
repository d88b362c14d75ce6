"""
Lifecycle service tests.

Covers the happy paths of every action, business declines, transport
failures and timeouts, reference-id chaining through the ledger, and the
persistence failure handling around the gateway call.
"""
import asyncio
import uuid
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY

from payment_lifecycle.core import OrderLifecycleService, OrderStore, TransactionLedger
from payment_lifecycle.database.models import (
    FailureKind,
    PaymentAction,
    PaymentStatus,
    TransactionStatus,
)
from payment_lifecycle.exceptions import (
    GatewayTransportError,
    InvalidTransitionError,
    MissingReferenceTransactionError,
    PaymentValidationError,
    PersistenceError,
    ReconciliationRequiredError,
    ResourceNotFoundError,
)
from payment_lifecycle.integrations.gateway import GatewayOutcome

from .factories import create_order


def declined(message: str = "Your card was declined.") -> GatewayOutcome:
    return GatewayOutcome.declined(message, raw_response={"error_code": "card_declined"})


class TestPurchase:
    """Purchase: CREATED -> CAPTURED in one step."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_purchase_success(
        self, service: OrderLifecycleService, ledger: TransactionLedger, gateway: AsyncMock
    ) -> None:
        order = await service.purchase(Decimal("100.00"), "USD")

        assert order.status == PaymentStatus.CAPTURED
        assert order.amount == Decimal("100.00")
        assert order.currency == "USD"

        entries = await ledger.list_for_order(order.id)
        assert len(entries) == 1
        assert entries[0].type == PaymentAction.PURCHASE
        assert entries[0].status == TransactionStatus.SUCCESS
        assert entries[0].gateway_transaction_id == "pi_purchase_1"
        assert entries[0].amount == Decimal("100.00")
        gateway.purchase.assert_awaited_once()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_purchase_decline_returns_failed_order(
        self, service: OrderLifecycleService, ledger: TransactionLedger, gateway: AsyncMock
    ) -> None:
        gateway.purchase.return_value = declined()

        order = await service.purchase("25.00", "eur")

        assert order.status == PaymentStatus.FAILED
        assert order.currency == "EUR"

        entries = await ledger.list_for_order(order.id)
        assert len(entries) == 1
        assert entries[0].status == TransactionStatus.FAILED
        assert entries[0].failure_kind == FailureKind.DECLINED
        assert entries[0].gateway_transaction_id is None
        assert entries[0].error_message == "Your card was declined."

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_order_accepts_no_further_actions(
        self, service: OrderLifecycleService, gateway: AsyncMock
    ) -> None:
        gateway.purchase.return_value = declined()
        order = await service.purchase("25.00", "USD")

        with pytest.raises(InvalidTransitionError):
            await service.refund(order.id, "5.00")
        with pytest.raises(InvalidTransitionError):
            await service.capture(order.id)

        gateway.refund.assert_not_awaited()
        gateway.capture.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_purchase_persists_order(
        self, service: OrderLifecycleService, order_store: OrderStore
    ) -> None:
        order = await service.purchase(10, "USD")

        loaded = await order_store.find_by_id(order.id)
        assert loaded.status == PaymentStatus.CAPTURED
        assert loaded.updated_at > loaded.created_at


class TestInputValidation:

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, "0.00", "abc", None, "NaN", "Infinity"])
    async def test_invalid_amount(
        self, service: OrderLifecycleService, gateway: AsyncMock, amount: Any
    ) -> None:
        with pytest.raises(PaymentValidationError):
            await service.purchase(amount, "USD")
        with pytest.raises(PaymentValidationError):
            await service.authorize(amount, "USD")

        gateway.purchase.assert_not_awaited()
        gateway.authorize.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("currency", ["US", "USDT", "12A", "", None])
    async def test_invalid_currency(
        self, service: OrderLifecycleService, gateway: AsyncMock, currency: Any
    ) -> None:
        with pytest.raises(PaymentValidationError):
            await service.purchase("10.00", currency)

        gateway.purchase.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_refund_amount(
        self, service: OrderLifecycleService, gateway: AsyncMock
    ) -> None:
        order = await service.purchase("10.00", "USD")

        with pytest.raises(PaymentValidationError):
            await service.refund(order.id, "-1")

        gateway.refund.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_order_id(self, service: OrderLifecycleService) -> None:
        with pytest.raises(PaymentValidationError):
            await service.capture("not-a-uuid")


class TestAuthorizeCaptureCancel:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_authorize_then_capture(
        self, service: OrderLifecycleService, ledger: TransactionLedger, gateway: AsyncMock
    ) -> None:
        order = await service.authorize("50.00", "USD")
        assert order.status == PaymentStatus.AUTHORIZED

        captured = await service.capture(order.id)

        assert captured.status == PaymentStatus.CAPTURED
        assert captured.amount == Decimal("50.00")
        _, ref_txn_id = gateway.capture.await_args.args
        assert ref_txn_id == "pi_auth_1"

        entries = await ledger.list_for_order(order.id)
        assert [(e.type, e.status) for e in entries] == [
            (PaymentAction.AUTHORIZE, TransactionStatus.SUCCESS),
            (PaymentAction.CAPTURE, TransactionStatus.SUCCESS),
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_authorize_then_cancel(
        self, service: OrderLifecycleService, gateway: AsyncMock
    ) -> None:
        order = await service.authorize("50.00", "USD")

        cancelled = await service.cancel(str(order.id))

        assert cancelled.status == PaymentStatus.CANCELLED
        _, ref_txn_id = gateway.cancel.await_args.args
        assert ref_txn_id == "pi_auth_1"

        with pytest.raises(InvalidTransitionError):
            await service.capture(order.id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_authorize_decline(
        self, service: OrderLifecycleService, gateway: AsyncMock
    ) -> None:
        gateway.authorize.return_value = declined("Insufficient funds")

        order = await service.authorize("50.00", "USD")

        assert order.status == PaymentStatus.FAILED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_capture_decline_fails_order(
        self, service: OrderLifecycleService, ledger: TransactionLedger, gateway: AsyncMock
    ) -> None:
        order = await service.authorize("50.00", "USD")
        gateway.capture.return_value = declined("Authorization expired")

        result = await service.capture(order.id)

        assert result.status == PaymentStatus.FAILED
        entries = await ledger.list_for_order(order.id)
        assert entries[-1].failure_kind == FailureKind.DECLINED
        # The authorization is still the latest successful reference
        assert await ledger.last_successful_transaction_id(order.id) == "pi_auth_1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_decline_fails_order(
        self, service: OrderLifecycleService, gateway: AsyncMock
    ) -> None:
        order = await service.authorize("50.00", "USD")
        gateway.cancel.return_value = declined("Already captured")

        result = await service.cancel(order.id)

        assert result.status == PaymentStatus.FAILED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_capture_requires_authorized_order(
        self, service: OrderLifecycleService, ledger: TransactionLedger, gateway: AsyncMock
    ) -> None:
        order = await service.purchase("50.00", "USD")

        with pytest.raises(InvalidTransitionError) as exc_info:
            await service.capture(order.id)

        assert exc_info.value.current_status == PaymentStatus.CAPTURED
        assert exc_info.value.action == PaymentAction.CAPTURE
        gateway.capture.assert_not_awaited()
        assert len(await ledger.list_for_order(order.id)) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(
        self, service: OrderLifecycleService, gateway: AsyncMock
    ) -> None:
        with pytest.raises(ResourceNotFoundError):
            await service.capture(uuid.uuid4())
        with pytest.raises(ResourceNotFoundError):
            await service.cancel(uuid.uuid4())
        with pytest.raises(ResourceNotFoundError):
            await service.refund(uuid.uuid4(), "1.00")

        gateway.capture.assert_not_awaited()
        gateway.cancel.assert_not_awaited()
        gateway.refund.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_reference_transaction(
        self,
        service: OrderLifecycleService,
        order_store: OrderStore,
        gateway: AsyncMock,
    ) -> None:
        # Authorized order without any ledger entry: corrupted history
        order = await create_order(order_store, status=PaymentStatus.AUTHORIZED)

        with pytest.raises(MissingReferenceTransactionError):
            await service.capture(order.id)

        gateway.capture.assert_not_awaited()
        loaded = await order_store.find_by_id(order.id)
        assert loaded.status == PaymentStatus.AUTHORIZED


class TestRefund:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_partial_then_full_refund(
        self, service: OrderLifecycleService, gateway: AsyncMock
    ) -> None:
        order = await service.purchase("100.00", "USD")

        partial = await service.refund(order.id, "40.00")
        assert partial.status == PaymentStatus.PARTIALLY_REFUNDED
        _, ref_txn_id, refund_amount = gateway.refund.await_args.args
        assert ref_txn_id == "pi_purchase_1"
        assert refund_amount == Decimal("40.00")

        gateway.refund.return_value = GatewayOutcome.approved("re_refund_2")
        second = await service.refund(order.id, "10.00")
        assert second.status == PaymentStatus.PARTIALLY_REFUNDED
        # Each refund references the latest successful entry
        _, ref_txn_id, _ = gateway.refund.await_args.args
        assert ref_txn_id == "re_refund_1"

        full = await service.refund(order.id, "100.00")
        assert full.status == PaymentStatus.REFUNDED

        with pytest.raises(InvalidTransitionError):
            await service.refund(order.id, "1.00")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_of_captured_authorization_references_capture(
        self, service: OrderLifecycleService, gateway: AsyncMock
    ) -> None:
        order = await service.authorize("80.00", "USD")
        await service.capture(order.id)

        refunded = await service.refund(order.id, "80.00")

        assert refunded.status == PaymentStatus.REFUNDED
        _, ref_txn_id, _ = gateway.refund.await_args.args
        assert ref_txn_id == "pi_capture_1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_decline_keeps_status(
        self,
        service: OrderLifecycleService,
        ledger: TransactionLedger,
        order_store: OrderStore,
        gateway: AsyncMock,
    ) -> None:
        order = await service.purchase("100.00", "USD")
        gateway.refund.return_value = declined("Charge already refunded")

        result = await service.refund(order.id, "30.00")

        assert result.status == PaymentStatus.CAPTURED
        loaded = await order_store.find_by_id(order.id)
        assert loaded.status == PaymentStatus.CAPTURED
        assert loaded.version == order.version

        entries = await ledger.list_for_order(order.id)
        assert entries[-1].type == PaymentAction.REFUND
        assert entries[-1].status == TransactionStatus.FAILED
        assert entries[-1].failure_kind == FailureKind.DECLINED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_decline_after_partial_refund_keeps_partial_status(
        self, service: OrderLifecycleService, gateway: AsyncMock
    ) -> None:
        order = await service.purchase("100.00", "USD")
        await service.refund(order.id, "10.00")
        gateway.refund.return_value = declined()

        result = await service.refund(order.id, "10.00")

        assert result.status == PaymentStatus.PARTIALLY_REFUNDED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_above_order_amount_is_logged_and_refunds_fully(
        self, service: OrderLifecycleService, mocker: Any
    ) -> None:
        order = await service.purchase("100.00", "USD")
        logger = mocker.patch("payment_lifecycle.core.lifecycle_service.logger")

        result = await service.refund(order.id, "150.00")

        assert result.status == PaymentStatus.REFUNDED
        warned = [c.args[0] for c in logger.warning.call_args_list]
        assert "refund_exceeds_order_amount" in warned


class TestTransportFailures:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transport_failure_on_purchase(
        self,
        service: OrderLifecycleService,
        ledger: TransactionLedger,
        order_store: OrderStore,
        gateway: AsyncMock,
    ) -> None:
        gateway.purchase.side_effect = GatewayTransportError("Connection reset by peer")

        with pytest.raises(GatewayTransportError) as exc_info:
            await service.purchase("100.00", "USD")

        order_id = exc_info.value.order_id
        assert order_id is not None
        assert exc_info.value.retryable is True
        assert exc_info.value.context["order_id"] == str(order_id)

        loaded = await order_store.find_by_id(order_id)
        assert loaded.status == PaymentStatus.FAILED

        entries = await ledger.list_for_order(order_id)
        assert len(entries) == 1
        assert entries[0].status == TransactionStatus.FAILED
        assert entries[0].failure_kind == FailureKind.TRANSPORT
        assert entries[0].raw_response["transport_failure"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_timeout_on_capture(
        self,
        service: OrderLifecycleService,
        ledger: TransactionLedger,
        order_store: OrderStore,
        gateway: AsyncMock,
    ) -> None:
        order = await service.authorize("100.00", "USD")

        async def hang(*args: Any) -> GatewayOutcome:
            await asyncio.sleep(5)
            return GatewayOutcome.approved("pi_never")

        gateway.capture.side_effect = hang

        with pytest.raises(GatewayTransportError) as exc_info:
            await service.capture(order.id)

        assert exc_info.value.order_id == order.id
        assert "timed out" in exc_info.value.message

        loaded = await order_store.find_by_id(order.id)
        assert loaded.status == PaymentStatus.FAILED
        entries = await ledger.list_for_order(order.id)
        assert entries[-1].failure_kind == FailureKind.TRANSPORT

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transport_failure_on_refund_keeps_status(
        self,
        service: OrderLifecycleService,
        ledger: TransactionLedger,
        order_store: OrderStore,
        gateway: AsyncMock,
    ) -> None:
        order = await service.purchase("100.00", "USD")
        gateway.refund.side_effect = GatewayTransportError("Read timed out")

        with pytest.raises(GatewayTransportError):
            await service.refund(order.id, "20.00")

        loaded = await order_store.find_by_id(order.id)
        assert loaded.status == PaymentStatus.CAPTURED
        entries = await ledger.list_for_order(order.id)
        assert entries[-1].failure_kind == FailureKind.TRANSPORT


class TestPersistenceFailures:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_store_failure_before_gateway_call(
        self,
        service: OrderLifecycleService,
        order_store: OrderStore,
        gateway: AsyncMock,
        mocker: Any,
    ) -> None:
        order = await service.authorize("100.00", "USD")
        mocker.patch.object(
            order_store, "find_by_id", side_effect=PersistenceError("database is locked")
        )

        with pytest.raises(PersistenceError):
            await service.capture(order.id)

        gateway.capture.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_save_failure_after_gateway_success_needs_reconciliation(
        self,
        service: OrderLifecycleService,
        order_store: OrderStore,
        ledger: TransactionLedger,
        mocker: Any,
    ) -> None:
        order = await service.authorize("100.00", "USD")
        mocker.patch.object(
            order_store, "save", side_effect=PersistenceError("database is locked")
        )
        before = REGISTRY.get_sample_value(
            "payment_reconciliation_required_total", {"action": "CAPTURE"}
        ) or 0.0

        with pytest.raises(ReconciliationRequiredError) as exc_info:
            await service.capture(order.id)

        error = exc_info.value
        assert error.order_id == order.id
        assert error.action == PaymentAction.CAPTURE
        assert error.gateway_transaction_id == "pi_capture_1"
        assert error.http_status == 500

        # The ledger still records what the gateway did
        entries = await ledger.list_for_order(order.id)
        assert entries[-1].status == TransactionStatus.SUCCESS
        assert REGISTRY.get_sample_value(
            "payment_reconciliation_required_total", {"action": "CAPTURE"}
        ) == before + 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_ledger_failure_after_gateway_success_needs_reconciliation(
        self,
        service: OrderLifecycleService,
        ledger: TransactionLedger,
        order_store: OrderStore,
        mocker: Any,
    ) -> None:
        order = await service.purchase("100.00", "USD")
        mocker.patch.object(ledger, "append", side_effect=PersistenceError("disk full"))

        with pytest.raises(ReconciliationRequiredError) as exc_info:
            await service.refund(order.id, "10.00")

        assert exc_info.value.gateway_transaction_id == "re_refund_1"
        loaded = await order_store.find_by_id(order.id)
        assert loaded.status == PaymentStatus.CAPTURED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_save_failure_after_transport_failure_needs_reconciliation(
        self,
        service: OrderLifecycleService,
        order_store: OrderStore,
        gateway: AsyncMock,
        mocker: Any,
    ) -> None:
        order = await service.authorize("100.00", "USD")
        gateway.capture.side_effect = GatewayTransportError("Connection reset")
        mocker.patch.object(
            order_store, "save", side_effect=PersistenceError("database is locked")
        )

        with pytest.raises(ReconciliationRequiredError) as exc_info:
            await service.capture(order.id)

        assert exc_info.value.gateway_transaction_id is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_save_failure_after_decline_is_plain_persistence_error(
        self,
        service: OrderLifecycleService,
        order_store: OrderStore,
        gateway: AsyncMock,
        mocker: Any,
    ) -> None:
        order = await service.authorize("100.00", "USD")
        gateway.capture.return_value = declined()
        mocker.patch.object(
            order_store, "save", side_effect=PersistenceError("database is locked")
        )

        with pytest.raises(PersistenceError) as exc_info:
            await service.capture(order.id)

        assert not isinstance(exc_info.value, ReconciliationRequiredError)


class TestOrderInvariants:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_updated_at_increases_and_amount_is_fixed(
        self, service: OrderLifecycleService, order_store: OrderStore
    ) -> None:
        order = await service.authorize("60.00", "GBP")
        authorized = await order_store.find_by_id(order.id)

        await service.capture(order.id)
        captured = await order_store.find_by_id(order.id)

        await service.refund(order.id, "15.00")
        refunded = await order_store.find_by_id(order.id)

        assert authorized.created_at == captured.created_at == refunded.created_at
        assert authorized.updated_at < captured.updated_at < refunded.updated_at
        assert {o.amount for o in (authorized, captured, refunded)} == {Decimal("60.00")}
        assert {o.currency for o in (authorized, captured, refunded)} == {"GBP"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_ledger_matches_status_history(
        self, service: OrderLifecycleService, ledger: TransactionLedger, gateway: AsyncMock
    ) -> None:
        order = await service.authorize("60.00", "USD")
        gateway.capture.return_value = declined()
        await service.capture(order.id)

        entries = await ledger.list_for_order(order.id)

        assert [e.sequence for e in entries] == [1, 2]
        assert all(
            (e.status == TransactionStatus.SUCCESS) == (e.gateway_transaction_id is not None)
            for e in entries
        )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lock_released_after_errors(
        self, service: OrderLifecycleService, order_locks: Any, gateway: AsyncMock
    ) -> None:
        order = await service.purchase("10.00", "USD")

        with pytest.raises(InvalidTransitionError):
            await service.cancel(order.id)

        assert not order_locks.is_held(order.id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_order_and_list_transactions(
        self, service: OrderLifecycleService
    ) -> None:
        order = await service.purchase("10.00", "USD")
        await service.refund(order.id, "5.00")

        loaded = await service.get_order(str(order.id))
        transactions = await service.list_transactions(order.id)

        assert loaded.status == PaymentStatus.PARTIALLY_REFUNDED
        assert [t.type for t in transactions] == [PaymentAction.PURCHASE, PaymentAction.REFUND]

        with pytest.raises(ResourceNotFoundError):
            await service.list_transactions(uuid.uuid4())


class TestDocumentedScenarios:

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["capture", "cancel"])
    async def test_follow_up_on_created_order_is_rejected(
        self,
        service: OrderLifecycleService,
        order_store: OrderStore,
        gateway: AsyncMock,
        action: str,
    ) -> None:
        order = await create_order(order_store)

        with pytest.raises(InvalidTransitionError):
            await getattr(service, action)(order.id)

        assert gateway.mock_calls == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_scenarios_on_order_of_200(
        self, service: OrderLifecycleService, ledger: TransactionLedger, gateway: AsyncMock
    ) -> None:
        partial = await service.purchase("200", "USD")
        assert (await service.refund(partial.id, "100")).status == PaymentStatus.PARTIALLY_REFUNDED

        full = await service.purchase("200", "USD")
        assert (await service.refund(full.id, "200")).status == PaymentStatus.REFUNDED

        failing = await service.purchase("200", "USD")
        gateway.refund.return_value = declined()
        assert (await service.refund(failing.id, "100")).status == PaymentStatus.CAPTURED
        entries = await ledger.list_for_order(failing.id)
        assert [(e.type, e.status) for e in entries] == [
            (PaymentAction.PURCHASE, TransactionStatus.SUCCESS),
            (PaymentAction.REFUND, TransactionStatus.FAILED),
        ]
