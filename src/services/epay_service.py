# coding: utf-8
"""
Epay Service (epay-compatible merchant gateways)

Features:
- Build the redirect URL for a pending order (submit.php)
- Verify asynchronous payment callbacks (MD5 signature)

Signature: sort all non-empty params except sign / sign_type by key, join as
k1=v1&k2=v2&...&key=<merchant_key>, MD5, lowercase hex.
Amounts travel as yuan strings ("12.50") and are converted to cents.
"""
import hashlib
import hmac
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Mapping, Optional
from urllib.parse import urlencode

from loguru import logger

from src.core.exceptions import PaymentVerificationError
from src.database.models import PaymentConfig

SUCCESS_STATUSES = ("TRADE_SUCCESS", "TRADE_FINISHED")
SIGN_EXCLUDED = ("sign", "sign_type")


@dataclass
class EpayCallback:
    """Verified callback"""

    trade_no: str
    amount: int  # cents
    status: str
    raw_params: Dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.status.upper() in SUCCESS_STATUSES


def cents_to_amount(cents: int) -> str:
    """1250 -> '12.50'"""
    return str((Decimal(cents) / 100).quantize(Decimal("0.01")))


def amount_to_cents(amount: str) -> int:
    """
    '12.50' -> 1250 (half-up rounding)

    Raises:
        PaymentVerificationError: Not a number
    """
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError):
        raise PaymentVerificationError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise PaymentVerificationError(f"Invalid amount: {amount!r}")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class EpayProvider:
    """Epay merchant gateway"""

    name = "epay"

    def __init__(
        self,
        merchant_id: str,
        merchant_key: str,
        api_url: str = "",
        notify_url: str = "",
    ):
        self.merchant_id = merchant_id
        self.merchant_key = merchant_key
        self.api_url = api_url.rstrip("/")
        self.notify_url = notify_url

    @classmethod
    def from_config(cls, config: PaymentConfig) -> "EpayProvider":
        return cls(
            merchant_id=config.merchant_id or "",
            merchant_key=config.merchant_key or "",
            api_url=config.api_url or "",
            notify_url=config.notify_url or "",
        )

    def generate_sign(self, params: Mapping[str, str]) -> str:
        """MD5 signature over the sorted, non-empty params"""
        keys = sorted(k for k, v in params.items() if k not in SIGN_EXCLUDED and v != "")
        payload = "&".join(f"{k}={params[k]}" for k in keys)
        payload = f"{payload}&key={self.merchant_key}" if payload else f"key={self.merchant_key}"
        return hashlib.md5(payload.encode("utf-8")).hexdigest()

    def verify_sign(self, params: Mapping[str, str]) -> bool:
        sign = params.get("sign", "")
        # An empty key would let anyone compute a valid signature
        if not sign or not self.merchant_key:
            return False
        return hmac.compare_digest(self.generate_sign(params), sign.lower())

    def create_pay_url(
        self,
        trade_no: str,
        amount: int,
        subject: str,
        return_url: str = "",
        pay_type: str = "alipay",
    ) -> str:
        """
        Build the gateway redirect URL for an order

        Args:
            trade_no: Merchant trade number
            amount: Amount in cents
            subject: Item name shown by the gateway
            return_url: Where the gateway sends the browser afterwards
            pay_type: Gateway channel (alipay, wxpay, ...)

        Returns:
            Signed submit.php URL
        """
        params = {
            "pid": self.merchant_id,
            "type": pay_type,
            "out_trade_no": trade_no,
            "notify_url": self.notify_url,
            "return_url": return_url,
            "amount": cents_to_amount(amount),
            "subject": subject,
        }
        params["sign"] = self.generate_sign(params)
        params["sign_type"] = "MD5"

        return f"{self.api_url}/submit.php?{urlencode(sorted(params.items()))}"

    def verify_callback(self, params: Mapping[str, str]) -> EpayCallback:
        """
        Verify a gateway callback

        Returns:
            EpayCallback with amount in cents

        Raises:
            PaymentVerificationError: Missing/invalid signature, missing
                trade number or malformed amount
        """
        if not params.get("sign"):
            raise PaymentVerificationError("Missing signature")

        if not self.verify_sign(params):
            logger.warning(f"Epay signature mismatch for trade_no={params.get('out_trade_no')}")
            raise PaymentVerificationError("Signature verification failed")

        trade_no = params.get("out_trade_no", "")
        if not trade_no:
            raise PaymentVerificationError("Missing out_trade_no")

        return EpayCallback(
            trade_no=trade_no,
            amount=amount_to_cents(params.get("amount", "")),
            status=params.get("trade_status", ""),
            raw_params=dict(params),
        )


def create_payment_provider(config: PaymentConfig) -> Optional[EpayProvider]:
    """Provider for a payment config (None for unsupported providers)"""
    if config.provider == EpayProvider.name:
        return EpayProvider.from_config(config)
    return None
