"""Tests for the payout dispatcher: reserve, resolve, pay, settle."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from railgate.constants import PayoutStatus
from railgate.errors import InvalidDestinationError, LimitExceededError, ValidationError
from railgate.gateway import PaymentResult
from railgate.limits import CashoutLimitLedger
from railgate.payouts import PayoutDispatcher
from railgate.resolver import InvoiceResolver

ADDRESS = "alice@wallet.example.com"
AMOUNTLESS_INVOICE = "lnbc1pjqqqsyqcyq5rqwzqfqypqdq5xysxxatsyp3k7enxv4js"
FIXED_INVOICE = "lnbc250u1pjqqqsyqcyq5rqwzqfqypqdq5xysxxatsyp3k7enxv4js"

_PAY_REQUEST = {
    "tag": "payRequest",
    "callback": "https://wallet.example.com/lnurlp/alice/callback",
    "minSendable": 1_000,
    "maxSendable": 100_000_000_000,
    "metadata": "[]",
}


def _mock_response(status: int = 200, json_data: object = None) -> httpx.Response:
    return httpx.Response(
        status_code=status,
        json=json_data if json_data is not None else {},
        request=httpx.Request("GET", "https://wallet.example.com"),
    )


def _invoice_for(msat: int) -> str:
    return f"lnbc{msat}p1pjqqqsyqcyq5rqwzqfqypq"


@pytest.fixture
def limits(store) -> CashoutLimitLedger:
    return CashoutLimitLedger(store)


@pytest.fixture
def resolver(rates, fake_decode) -> InvoiceResolver:
    """Resolver whose LNURL server issues an invoice for whatever is asked."""
    resolver = InvoiceResolver(rates)

    async def get(url: str, params: dict | None = None) -> httpx.Response:
        await asyncio.sleep(0)
        if params is None:
            return _mock_response(200, _PAY_REQUEST)
        text = _invoice_for(params["amount"])
        fake_decode.add(text, amount_msat=params["amount"])
        return _mock_response(200, {"pr": text})

    resolver._client.get = get
    return resolver


@pytest.fixture
def dispatcher(store, limits, resolver, gateway, rates) -> PayoutDispatcher:
    return PayoutDispatcher(store, limits, resolver, gateway, rates)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestAttemptPayout:
    @pytest.mark.asyncio
    async def test_address_payout_completes(self, dispatcher, gateway, limits) -> None:
        result = await dispatcher.attempt_payout("cust-1", ADDRESS, "15")

        assert result.success
        payout = result.payout
        assert payout.status is PayoutStatus.COMPLETED
        assert payout.resolved_sats == 25_000
        assert payout.gateway_ref == "hash-1"
        # LNURL invoices carry their amount; the gateway gets none.
        assert gateway.paid == [(_invoice_for(25_000_000), None)]
        snap = await limits.check_limit("cust-1")
        assert snap.total_usd == Decimal("15")

    @pytest.mark.asyncio
    async def test_amountless_invoice_sends_amount(self, dispatcher, gateway, fake_decode) -> None:
        fake_decode.add(AMOUNTLESS_INVOICE)
        result = await dispatcher.attempt_payout("cust-1", AMOUNTLESS_INVOICE, "15")
        assert result.success
        assert gateway.paid == [(AMOUNTLESS_INVOICE, 25_000)]

    @pytest.mark.asyncio
    async def test_fixed_invoice_reserves_its_value(
        self, dispatcher, gateway, fake_decode, limits
    ) -> None:
        # 25,000 sats at 60,000 USD/BTC is 15 USD, whatever the caller asked for.
        fake_decode.add(FIXED_INVOICE, amount_msat=25_000_000)
        result = await dispatcher.attempt_payout("cust-1", FIXED_INVOICE, "200")
        assert result.success
        assert result.payout.reserved_usd == Decimal("15.00")
        assert gateway.paid == [(FIXED_INVOICE, None)]
        assert (await limits.check_limit("cust-1")).total_usd == Decimal("15.00")


# ---------------------------------------------------------------------------
# Limit enforcement
# ---------------------------------------------------------------------------


class TestLimit:
    @pytest.mark.asyncio
    async def test_over_limit_never_reaches_gateway(self, dispatcher, gateway, store) -> None:
        await dispatcher.attempt_payout("cust-1", ADDRESS, "290")
        with pytest.raises(LimitExceededError) as exc_info:
            await dispatcher.attempt_payout("cust-1", ADDRESS, "15")
        assert exc_info.value.remaining_usd == Decimal("10")
        assert len(gateway.paid) == 1
        assert len(await store.list_payouts("cust-1")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_payouts_exactly_one_fits(
        self, dispatcher, gateway, limits
    ) -> None:
        await dispatcher.attempt_payout("cust-1", ADDRESS, "285")

        async def attempt() -> bool:
            try:
                return (await dispatcher.attempt_payout("cust-1", ADDRESS, "15")).success
            except LimitExceededError:
                return False

        results = await asyncio.gather(attempt(), attempt())

        assert sorted(results) == [False, True]
        assert len(gateway.paid) == 2
        assert (await limits.check_limit("cust-1")).total_usd == Decimal("300")

    @pytest.mark.asyncio
    async def test_invalid_destination_reserves_nothing(self, dispatcher, limits) -> None:
        with pytest.raises(InvalidDestinationError):
            await dispatcher.attempt_payout("cust-1", "bitcoin:1BoatSLRHtKNngkdXEeobR76b53LETtpyT", "5")
        assert (await limits.check_limit("cust-1")).total_usd == Decimal("0")

    @pytest.mark.asyncio
    async def test_amount_required_for_address(self, dispatcher, limits) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await dispatcher.attempt_payout("cust-1", ADDRESS)
        assert exc_info.value.reason == "amount_required"
        assert (await limits.check_limit("cust-1")).total_usd == Decimal("0")


# ---------------------------------------------------------------------------
# Failures after reservation
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_gateway_rejection_releases(self, dispatcher, gateway, limits) -> None:
        gateway.pay_result = PaymentResult(success=False, error="no route", outcome_known=True)

        result = await dispatcher.attempt_payout("cust-1", ADDRESS, "100")

        assert not result.success
        assert result.reason == "gateway_rejected"
        assert result.reservation_released
        assert result.payout.status is PayoutStatus.FAILED
        assert (await limits.check_limit("cust-1")).total_usd == Decimal("0")

    @pytest.mark.asyncio
    async def test_unknown_outcome_retains(self, dispatcher, gateway, limits, caplog) -> None:
        gateway.pay_result = PaymentResult(success=False, error="timeout", outcome_known=False)

        result = await dispatcher.attempt_payout("cust-1", ADDRESS, "100")

        assert not result.success
        assert result.reason == "outcome_unknown"
        assert not result.reservation_released
        assert result.payout.status is PayoutStatus.FAILED
        assert (await limits.check_limit("cust-1")).total_usd == Decimal("100")
        assert "CRITICAL" in caplog.text

    @pytest.mark.asyncio
    async def test_gateway_exception_is_unknown_outcome(self, dispatcher, gateway, limits) -> None:
        gateway.pay_invoice = AsyncMock(side_effect=RuntimeError("socket closed"))
        result = await dispatcher.attempt_payout("cust-1", ADDRESS, "100")
        assert result.reason == "outcome_unknown"
        assert (await limits.check_limit("cust-1")).total_usd == Decimal("100")

    @pytest.mark.asyncio
    async def test_resolver_failure_releases(self, dispatcher, resolver, gateway, limits) -> None:
        resolver._client.get = AsyncMock(
            return_value=_mock_response(200, {"status": "ERROR", "reason": "unknown user"})
        )
        result = await dispatcher.attempt_payout("cust-1", ADDRESS, "40")

        assert not result.success
        assert result.reservation_released
        assert "unknown user" in result.message
        assert gateway.paid == []
        assert (await limits.check_limit("cust-1")).total_usd == Decimal("0")


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_same_payout_id_sent_once(self, dispatcher, gateway, limits) -> None:
        first = await dispatcher.attempt_payout("cust-1", ADDRESS, "50", payout_id="p-1")
        second = await dispatcher.attempt_payout("cust-1", ADDRESS, "50", payout_id="p-1")

        assert first.success and not first.duplicate
        assert second.duplicate
        assert second.success
        assert len(gateway.paid) == 1
        assert (await limits.check_limit("cust-1")).total_usd == Decimal("50")

    @pytest.mark.asyncio
    async def test_payout_id_of_other_customer_rejected(self, dispatcher) -> None:
        await dispatcher.attempt_payout("cust-1", ADDRESS, "5", payout_id="p-1")
        with pytest.raises(ValidationError) as exc_info:
            await dispatcher.attempt_payout("cust-2", ADDRESS, "5", payout_id="p-1")
        assert exc_info.value.reason == "duplicate_id"


# ---------------------------------------------------------------------------
# Quote
# ---------------------------------------------------------------------------


class TestQuote:
    @pytest.mark.asyncio
    async def test_quote(self, dispatcher, limits) -> None:
        quote = await dispatcher.quote("15")
        assert quote == {
            "usd": "15",
            "sats": 25_000,
            "btc": "0.00025000",
            "btc_price_usd": "60000",
        }
        assert (await limits.check_limit("cust-1")).total_usd == Decimal("0")

    @pytest.mark.asyncio
    async def test_quote_above_ceiling(self, dispatcher) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await dispatcher.quote("301")
        assert exc_info.value.reason == "amount_out_of_bounds"


# ---------------------------------------------------------------------------
# Unexpected resolver errors
# ---------------------------------------------------------------------------


class TestResolverCrash:
    @pytest.mark.asyncio
    async def test_malformed_callback_url_fails_and_releases(
        self, dispatcher, resolver, gateway, store, limits
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=dict(_PAY_REQUEST, callback="https://[::1/cb"))

        resolver._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        result = await dispatcher.attempt_payout("cust-1", ADDRESS, "20", payout_id="p-1")

        assert not result.success
        assert result.reservation_released
        assert gateway.paid == []
        stored = await store.get_payout("p-1")
        assert stored.status is PayoutStatus.FAILED
        assert (await limits.check_limit("cust-1")).total_usd == Decimal("0")

    @pytest.mark.asyncio
    async def test_any_exception_fails_and_releases(
        self, dispatcher, resolver, store, limits
    ) -> None:
        resolver.resolve = AsyncMock(side_effect=RuntimeError("decoder blew up"))

        result = await dispatcher.attempt_payout("cust-1", ADDRESS, "20", payout_id="p-2")

        assert result.reason == "resolution_failed"
        assert "decoder" not in result.message
        assert (await store.get_payout("p-2")).status is PayoutStatus.FAILED
        assert (await limits.check_limit("cust-1")).total_usd == Decimal("0")
