"""Invoice/address resolver.

Turns a payout destination into a concrete BOLT11 plus the satoshi amount
that will be paid:

- a BOLT11 invoice is decoded locally; an embedded amount always wins over
  a caller-supplied USD amount, an amountless invoice needs one;
- a Lightning address (``user@domain``) goes through LNURL-pay: fetch
  ``https://domain/.well-known/lnurlp/user``, check the amount against
  ``minSendable``/``maxSendable``, then GET the callback with ``amount``.

Anything else is rejected before any network call. Validation failures
carry a ``reason`` code the caller can show (``malformed``,
``currency_mismatch``, ``amount_out_of_bounds``, ``amount_required``, ...).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

import bolt11
import httpx
from bolt11.exceptions import Bolt11Exception

from railgate.constants import MSATS_PER_SAT
from railgate.errors import ExternalDependencyError, InvalidDestinationError, ValidationError
from railgate.models import utcnow
from railgate.rates import ExchangeRateSource

logger = logging.getLogger(__name__)

_URI_PREFIX = "lightning:"
_DEFAULT_EXPIRY_SECS = 3600  # BOLT11 default when the x tag is absent
_INVOICE_RE = re.compile(r"^ln[a-z0-9]+1[02-9ac-hj-np-z]+$")
_ADDRESS_RE = re.compile(
    r"^(?P<user>[a-z0-9_.+-]+)@(?P<domain>[a-z0-9-]+(?:\.[a-z0-9-]+)+)$",
    re.IGNORECASE,
)


class LnurlError(ExternalDependencyError):
    """Lightning-address server unreachable or misbehaving."""

    public_message = "The payment address could not be resolved. Please try again later."


class DestinationKind(str, Enum):
    INVOICE = "invoice"
    ADDRESS = "address"


@dataclass(frozen=True)
class DecodedInvoice:
    invoice_text: str
    network: str
    amount_msat: int | None
    payment_hash: str | None
    created_at: datetime
    expires_at: datetime

    @property
    def amount_sats(self) -> int | None:
        if self.amount_msat is None:
            return None
        return -(-self.amount_msat // MSATS_PER_SAT)  # round up partial sats


@dataclass(frozen=True)
class Destination:
    kind: DestinationKind
    text: str
    invoice: DecodedInvoice | None = None
    user: str | None = None
    domain: str | None = None

    @property
    def lnurlp_url(self) -> str:
        return f"https://{self.domain}/.well-known/lnurlp/{self.user}"


@dataclass(frozen=True)
class PayParams:
    callback: str
    min_msat: int
    max_msat: int
    metadata: str


@dataclass(frozen=True)
class Resolution:
    """What will actually be paid.

    ``amount_fixed`` is True when the final invoice embeds its amount, in
    which case the gateway must not be sent an explicit amount.
    """

    kind: DestinationKind
    rail_amount_sats: int
    final_invoice: str
    amount_fixed: bool
    usd_amount: Decimal | None = None


def _decode(invoice_text: str) -> Any:
    return bolt11.decode(invoice_text)


def decode_invoice(
    invoice_text: str, network: str = "bc", now: datetime | None = None
) -> DecodedInvoice:
    """Decode and sanity-check a BOLT11. No network access."""
    try:
        raw = _decode(invoice_text)
    except (Bolt11Exception, ValueError, TypeError, KeyError) as e:
        raise ValidationError(
            "The invoice could not be decoded.", reason="malformed"
        ) from e

    if raw.currency != network:
        raise ValidationError(
            f"The invoice is for network '{raw.currency}', expected '{network}'.",
            reason="currency_mismatch",
        )

    created_at = datetime.fromtimestamp(int(raw.date), tz=timezone.utc)
    expires_at = created_at + timedelta(seconds=int(raw.expiry or _DEFAULT_EXPIRY_SECS))
    if (now or utcnow()) >= expires_at:
        raise ValidationError("The invoice has expired.", reason="expired")

    amount_msat = int(raw.amount_msat) if raw.amount_msat else None
    return DecodedInvoice(
        invoice_text=invoice_text,
        network=raw.currency,
        amount_msat=amount_msat,
        payment_hash=getattr(raw, "payment_hash", None),
        created_at=created_at,
        expires_at=expires_at,
    )


def parse_destination(destination: str, network: str = "bc") -> Destination:
    """Classify a destination string. Raises before any network call."""
    text = (destination or "").strip()
    if text.lower().startswith(_URI_PREFIX):
        text = text[len(_URI_PREFIX):]
    lowered = text.lower()

    if lowered.startswith("lnurl"):
        raise InvalidDestinationError(
            "LNURL strings are not supported; use a Lightning address or invoice."
        )
    if _INVOICE_RE.match(lowered):
        return Destination(
            kind=DestinationKind.INVOICE,
            text=lowered,
            invoice=decode_invoice(lowered, network),
        )
    match = _ADDRESS_RE.match(text)
    if match:
        return Destination(
            kind=DestinationKind.ADDRESS,
            text=lowered,
            user=match["user"].lower(),
            domain=match["domain"].lower(),
        )
    raise InvalidDestinationError(
        "Destination must be a Lightning invoice or a Lightning address (user@domain)."
    )


class InvoiceResolver:
    def __init__(
        self,
        rates: ExchangeRateSource,
        *,
        network: str = "bc",
        timeout_secs: float = 10.0,
    ) -> None:
        self._rates = rates
        self._network = network
        self._client = httpx.AsyncClient(timeout=timeout_secs, follow_redirects=True)

    def parse(self, destination: str) -> Destination:
        return parse_destination(destination, self._network)

    # -- LNURL-pay ------------------------------------------------------------

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = await self._client.get(url, params=params)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise LnurlError(f"LNURL request to {url} failed: {e}") from e
        if response.status_code != 200:
            raise LnurlError(
                f"LNURL server {url} returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise LnurlError(f"LNURL server {url} returned non-JSON") from e
        if not isinstance(data, dict):
            raise LnurlError(f"LNURL server {url} returned {type(data).__name__}")
        if str(data.get("status", "")).upper() == "ERROR":
            reason = str(data.get("reason") or "unspecified error")
            raise LnurlError(
                f"LNURL server {url} refused: {reason}",
                public_message=f"The payment address refused the request: {reason}",
            )
        return data

    async def fetch_pay_params(self, destination: Destination) -> PayParams:
        data = await self._get_json(destination.lnurlp_url)
        if data.get("tag") != "payRequest":
            raise InvalidDestinationError(
                f"{destination.text} does not accept payments.",
            )
        try:
            return PayParams(
                callback=str(data["callback"]),
                min_msat=int(data["minSendable"]),
                max_msat=int(data["maxSendable"]),
                metadata=str(data.get("metadata", "")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise LnurlError(f"Incomplete payRequest from {destination.domain}") from e

    async def request_invoice(self, params: PayParams, amount_msat: int) -> DecodedInvoice:
        if not params.callback.startswith("https://"):
            raise LnurlError(f"Refusing non-HTTPS callback {params.callback}")
        data = await self._get_json(params.callback, params={"amount": amount_msat})
        pr = data.get("pr")
        if not pr:
            raise LnurlError("LNURL callback returned no invoice")
        try:
            invoice = decode_invoice(str(pr), self._network)
        except ValidationError as e:
            raise LnurlError(
                f"LNURL callback returned an unusable invoice: {e}", reason=e.reason
            ) from e
        if invoice.amount_msat != amount_msat:
            raise LnurlError(
                f"LNURL invoice is for {invoice.amount_msat} msat, requested {amount_msat}",
                reason="invoice_mismatch",
            )
        return invoice

    # -- resolve --------------------------------------------------------------

    async def resolve(
        self, destination: str | Destination, usd_amount: Decimal | None = None
    ) -> Resolution:
        """Resolve to ``{rail amount, final invoice}``."""
        dest = destination if isinstance(destination, Destination) else self.parse(destination)

        if dest.kind is DestinationKind.INVOICE:
            invoice = dest.invoice
            if invoice.amount_sats is not None:
                if usd_amount is not None:
                    logger.debug("Invoice carries its own amount; $%s is advisory.", usd_amount)
                return Resolution(
                    kind=dest.kind,
                    rail_amount_sats=invoice.amount_sats,
                    final_invoice=invoice.invoice_text,
                    amount_fixed=True,
                    usd_amount=usd_amount,
                )
            if usd_amount is None:
                raise ValidationError(
                    "This invoice has no amount; an amount in USD is required.",
                    reason="amount_required",
                )
            sats = await self._rates.usd_to_sats(usd_amount)
            if sats <= 0:
                raise ValidationError("Amount is too small to pay.", reason="amount_out_of_bounds")
            return Resolution(
                kind=dest.kind,
                rail_amount_sats=sats,
                final_invoice=invoice.invoice_text,
                amount_fixed=False,
                usd_amount=usd_amount,
            )

        if usd_amount is None:
            raise ValidationError(
                "An amount in USD is required for Lightning address payouts.",
                reason="amount_required",
            )
        sats = await self._rates.usd_to_sats(usd_amount)
        amount_msat = sats * MSATS_PER_SAT
        params = await self.fetch_pay_params(dest)
        if not params.min_msat <= amount_msat <= params.max_msat:
            raise ValidationError(
                f"{dest.text} accepts between {-(-params.min_msat // MSATS_PER_SAT)} "
                f"and {params.max_msat // MSATS_PER_SAT} sats; requested {sats}.",
                reason="amount_out_of_bounds",
            )
        invoice = await self.request_invoice(params, amount_msat)
        logger.info("Resolved %s to an invoice for %d sats.", dest.text, sats)
        return Resolution(
            kind=dest.kind,
            rail_amount_sats=sats,
            final_invoice=invoice.invoice_text,
            amount_fixed=True,
            usd_amount=usd_amount,
        )

    async def close(self) -> None:
        await self._client.aclose()
