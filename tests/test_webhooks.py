"""Tests for inbound webhook authentication and payload parsing."""

import hashlib
import hmac
import json
from decimal import Decimal

import pytest

from railgate.errors import ValidationError, WebhookAuthError
from railgate.webhooks import (
    parse_gateway_event,
    parse_ledger_transfers,
    verify_btcpay_signature,
    verify_shared_secret,
)

MINT = "2b1kV6DkPAnxd5ixfnxCpjxmKwqjjaYmCZfHsFu24GXo"


def _sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestSharedSecret:
    def test_match(self) -> None:
        verify_shared_secret("s3cret", "s3cret")

    @pytest.mark.parametrize("presented", [None, "", "wrong"])
    def test_mismatch(self, presented: str | None) -> None:
        with pytest.raises(WebhookAuthError):
            verify_shared_secret(presented, "s3cret")

    def test_unconfigured_secret_rejects_everything(self) -> None:
        with pytest.raises(WebhookAuthError, match="not configured"):
            verify_shared_secret("anything", None)


class TestBTCPaySignature:
    def test_valid(self) -> None:
        body = b'{"invoiceId":"inv-1"}'
        verify_btcpay_signature(body, _sign(body, "hook"), "hook")

    def test_tampered_body(self) -> None:
        body = b'{"invoiceId":"inv-1"}'
        with pytest.raises(WebhookAuthError, match="mismatch"):
            verify_btcpay_signature(b'{"invoiceId":"inv-2"}', _sign(body, "hook"), "hook")

    def test_missing_prefix(self) -> None:
        body = b"{}"
        bare = hmac.new(b"hook", body, hashlib.sha256).hexdigest()
        with pytest.raises(WebhookAuthError, match="missing"):
            verify_btcpay_signature(body, bare, "hook")


# ---------------------------------------------------------------------------
# Ledger payloads
# ---------------------------------------------------------------------------


def _tx(signature: str, transfers: list[dict], error: object = None) -> dict:
    return {"signature": signature, "transactionError": error, "tokenTransfers": transfers}


def _transfer(to: str, amount: float, mint: str = MINT) -> dict:
    return {"fromUserAccount": "Payer", "toUserAccount": to, "mint": mint, "tokenAmount": amount}


class TestParseLedgerTransfers:
    def test_single_transfer(self) -> None:
        obs = parse_ledger_transfers([_tx("sig1", [_transfer("Dep1", 50)])], MINT)
        assert len(obs) == 1
        assert obs[0].address == "Dep1"
        assert obs[0].amount == Decimal("50")
        assert obs[0].tx_ref == "sig1"

    def test_sums_transfers_to_same_address(self) -> None:
        payload = [
            _tx("sig1", [_transfer("Dep1", 20.5)]),
            _tx("sig2", [_transfer("Dep1", 29.5), _transfer("Dep2", 1)]),
        ]
        obs = {o.address: o for o in parse_ledger_transfers(payload, MINT)}
        assert obs["Dep1"].amount == Decimal("50.0")
        assert obs["Dep1"].tx_ref == "sig1"
        assert obs["Dep2"].amount == Decimal("1")

    def test_ignores_other_mints_and_failed_txs(self) -> None:
        payload = [
            _tx("sig1", [_transfer("Dep1", 50, mint="OtherMint")]),
            _tx("sig2", [_transfer("Dep1", 50)], error={"InstructionError": [0, "Custom"]}),
        ]
        assert parse_ledger_transfers(payload, MINT) == []

    def test_single_object_accepted(self) -> None:
        assert len(parse_ledger_transfers(_tx("sig1", [_transfer("Dep1", 5)]), MINT)) == 1

    def test_non_list_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_ledger_transfers("nope", MINT)


# ---------------------------------------------------------------------------
# Gateway payloads
# ---------------------------------------------------------------------------


class TestParseGatewayEvent:
    def test_settled_event(self) -> None:
        body = json.dumps({"deliveryId": "d1", "type": "InvoiceSettled", "invoiceId": "inv-1"})
        event = parse_gateway_event(body.encode())
        assert event.invoice_id == "inv-1"
        assert event.event_type == "InvoiceSettled"
        assert event.delivery_id == "d1"

    @pytest.mark.parametrize("body", [b"not json", b"[]", b'{"type": "InvoiceSettled"}'])
    def test_invalid_bodies(self, body: bytes) -> None:
        with pytest.raises(ValidationError):
            parse_gateway_event(body)
