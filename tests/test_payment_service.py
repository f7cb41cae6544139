"""Tests for sales, refunds and payment webhook reconciliation."""

from decimal import Decimal

import pytest

from conftest import declined
from merchant_billing.core.exceptions import (
    GatewayIntegrationError,
    PaymentProcessingError,
    RefundProcessingError,
    UnsupportedGatewayError,
    ValidationError,
)
from merchant_billing.domain.payment_state import PaymentStatus, TransactionType
from merchant_billing.gateways.base import GatewayType, PaymentResult, RefundResult, WebhookEvent, WebhookOutcome


async def _sale(payments, amount: str = "100.00", **overrides):
    kwargs = {
        "merchant_id": "m_1",
        "provider": "stcpay",
        "amount": Decimal(amount),
        "currency": "SAR",
        "payment_method_token": "tok_wallet",
        "order_id": "order_1",
    }
    kwargs.update(overrides)
    return await payments.process_sale(**kwargs)


class TestProcessSale:
    @pytest.mark.asyncio
    async def test_successful_sale(self, payments, stcpay_gateway):
        entry = await _sale(payments)

        assert entry.status == PaymentStatus.SUCCESSFUL.value
        assert entry.transaction_type == TransactionType.SALE.value
        assert entry.provider_transaction_id is not None
        assert stcpay_gateway.charges[0].reference_id == str(entry.id)

    @pytest.mark.asyncio
    async def test_decline_returns_failed_row(self, payments, stcpay_gateway):
        stcpay_gateway.payment_results.append(declined("Insufficient balance"))

        entry = await _sale(payments)

        assert entry.status == PaymentStatus.FAILED.value
        assert entry.error_message == "Insufficient balance"

    @pytest.mark.asyncio
    async def test_gateway_error_marks_row_failed_and_raises(self, payments, stcpay_gateway, log_repository):
        stcpay_gateway.payment_results.append(GatewayIntegrationError("stcpay", "timed out"))

        with pytest.raises(PaymentProcessingError):
            await _sale(payments)

        [entry] = log_repository.rows.values()
        assert entry.status == PaymentStatus.FAILED.value
        assert "timed out" in entry.error_message

    @pytest.mark.asyncio
    async def test_invalid_currency_writes_nothing(self, payments, log_repository):
        with pytest.raises(ValidationError):
            await _sale(payments, currency="XYZ")
        assert log_repository.rows == {}

    @pytest.mark.asyncio
    async def test_disabled_provider_writes_nothing(self, payments, log_repository):
        with pytest.raises(UnsupportedGatewayError):
            await _sale(payments, provider="payfast_typo")
        assert log_repository.rows == {}

    @pytest.mark.asyncio
    async def test_amount_rounded_to_minor_unit(self, payments, stcpay_gateway):
        entry = await _sale(payments, amount="10.005")
        assert entry.amount == Decimal("10.01")
        assert stcpay_gateway.charges[0].amount == Decimal("10.01")


class TestRefundSale:
    @pytest.mark.asyncio
    async def test_full_refund_marks_original_refunded(self, payments, ledger):
        sale = await _sale(payments)

        refund = await payments.refund_sale("stcpay", sale.provider_transaction_id)

        assert refund.transaction_type == TransactionType.REFUND.value
        assert refund.status == PaymentStatus.SUCCESSFUL.value
        assert refund.amount == Decimal("100.00")
        original = await ledger.get(sale.id)
        assert original.status == PaymentStatus.REFUNDED.value

    @pytest.mark.asyncio
    async def test_partial_refund(self, payments, stcpay_gateway):
        sale = await _sale(payments)

        refund = await payments.refund_sale("stcpay", sale.provider_transaction_id, amount=Decimal("40.00"))

        assert refund.amount == Decimal("40.00")
        assert stcpay_gateway.refunds[0].amount == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_refund_above_original_rejected(self, payments):
        sale = await _sale(payments)
        with pytest.raises(ValidationError):
            await payments.refund_sale("stcpay", sale.provider_transaction_id, amount=Decimal("100.01"))

    @pytest.mark.asyncio
    async def test_refund_of_unknown_transaction_rejected(self, payments):
        with pytest.raises(ValidationError):
            await payments.refund_sale("stcpay", "txn_missing")

    @pytest.mark.asyncio
    async def test_refund_of_refunded_sale_rejected(self, payments):
        sale = await _sale(payments)
        await payments.refund_sale("stcpay", sale.provider_transaction_id)
        with pytest.raises(ValidationError):
            await payments.refund_sale("stcpay", sale.provider_transaction_id)

    @pytest.mark.asyncio
    async def test_rejected_refund_raises_and_keeps_original(self, payments, stcpay_gateway, ledger):
        sale = await _sale(payments)
        stcpay_gateway.refund_results.append(
            RefundResult(status=PaymentStatus.FAILED, error_message="Refund window closed")
        )

        with pytest.raises(RefundProcessingError):
            await payments.refund_sale("stcpay", sale.provider_transaction_id)

        original = await ledger.get(sale.id)
        assert original.status == PaymentStatus.SUCCESSFUL.value

    @pytest.mark.asyncio
    async def test_refund_transport_error_fails_refund_row(self, payments, stcpay_gateway, log_repository):
        sale = await _sale(payments)
        stcpay_gateway.refund_results.append(RefundProcessingError("Error processing STCPay refund: timeout"))

        with pytest.raises(RefundProcessingError):
            await payments.refund_sale("stcpay", sale.provider_transaction_id)

        refunds = [row for row in log_repository.rows.values() if row.transaction_type == TransactionType.REFUND.value]
        assert [row.status for row in refunds] == [PaymentStatus.FAILED.value]


def _event(event_type: str) -> WebhookEvent:
    return WebhookEvent(gateway=GatewayType.STCPAY, event_type=event_type, payload={}, event_id="evt_1")


class TestHandleWebhookPaymentEvent:
    @pytest.mark.asyncio
    async def test_updates_pending_row(self, payments, ledger, stcpay_gateway):
        # Provider answers asynchronously
        stcpay_gateway.payment_results.append(
            PaymentResult(status=PaymentStatus.PENDING, transaction_id="txn_async", raw_response={})
        )
        sale = await _sale(payments)
        assert sale.status == PaymentStatus.PENDING.value

        change = await payments.handle_webhook_payment_event(
            _event("payment.completed"),
            WebhookOutcome(status=PaymentStatus.SUCCESSFUL, provider_transaction_id="txn_async"),
        )

        assert change.previous_status == PaymentStatus.PENDING.value
        assert change.status_changed
        assert (await ledger.get(sale.id)).status == PaymentStatus.SUCCESSFUL.value

    @pytest.mark.asyncio
    async def test_replayed_success_is_ignored(self, payments):
        sale = await _sale(payments)

        change = await payments.handle_webhook_payment_event(
            _event("payment.completed"),
            WebhookOutcome(status=PaymentStatus.SUCCESSFUL, provider_transaction_id=sale.provider_transaction_id),
        )

        assert change is None

    @pytest.mark.asyncio
    async def test_unknown_transaction_with_details_creates_charge_row(self, payments):
        change = await payments.handle_webhook_payment_event(
            _event("payment.completed"),
            WebhookOutcome(
                status=PaymentStatus.SUCCESSFUL,
                provider_transaction_id="txn_portal",
                amount=Decimal("12.00"),
                currency="SAR",
                merchant_id="m_7",
            ),
        )

        assert change.entry.transaction_type == TransactionType.CHARGE.value
        assert change.entry.provider_transaction_id == "txn_portal"
        assert change.entry.status == PaymentStatus.SUCCESSFUL.value

    @pytest.mark.asyncio
    async def test_unknown_failure_without_merchant_is_skipped(self, payments, log_repository, caplog):
        change = await payments.handle_webhook_payment_event(
            _event("payment.failed"),
            WebhookOutcome(
                status=PaymentStatus.FAILED,
                provider_transaction_id="txn_orphan",
                amount=Decimal("12.00"),
                currency="SAR",
            ),
        )

        assert change is None
        assert log_repository.rows == {}
        assert "txn_orphan" in caplog.text

    @pytest.mark.asyncio
    async def test_refund_notification_marks_sale_refunded(self, payments, ledger):
        sale = await _sale(payments)

        change = await payments.handle_webhook_payment_event(
            _event("refund.completed"),
            WebhookOutcome(status=PaymentStatus.REFUNDED, provider_transaction_id=sale.provider_transaction_id),
        )

        assert change.entry.id == sale.id
        assert (await ledger.get(sale.id)).status == PaymentStatus.REFUNDED.value

    @pytest.mark.asyncio
    async def test_event_without_outcome_is_ignored(self, payments):
        assert await payments.handle_webhook_payment_event(_event("payment.created"), None) is None
