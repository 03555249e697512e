"""
Coinbase Advanced Trade client with ES256 (CDP key) authentication
"""

import base64
import json
import secrets
import time
from decimal import Decimal
from typing import Optional

import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from .models import ExchangeBalance, TradeRequest, OrderType, Side


def load_private_key(private_key_pem: str) -> ec.EllipticCurvePrivateKey:
    """Load a P-256 key from PEM text.

    Env vars usually carry the key with literal '\\n' sequences instead of newlines.
    Accepts both SEC1 (EC PRIVATE KEY) and PKCS#8 (PRIVATE KEY) blocks.
    """
    pem = private_key_pem.replace("\\n", "\n").strip()
    key = serialization.load_pem_private_key(pem.encode(), password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP256R1):
        raise ValueError("Coinbase key must be an EC P-256 private key")
    return key


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _decimal_str(value: float) -> str:
    """Plain decimal string (no exponent) for size/price fields"""
    text = format(Decimal(str(value)).normalize(), "f")
    return text


class CoinbaseClient:
    """
    Coinbase Advanced Trade REST client.

    Every request is authorized by a fresh, short-lived JWT signed with the
    CDP API key (ES256). Failures come back as error dicts, never exceptions.
    """

    BASE_URL = "https://api.coinbase.com"
    HOST = "api.coinbase.com"
    JWT_TTL_SECONDS = 120

    def __init__(self, key_name: str, private_key_pem: str):
        self.key_name = key_name
        self.private_key = load_private_key(private_key_pem)
        self.session = requests.Session()

    def build_jwt(self, method: str, path: str, now: int = None) -> str:
        """Signed bearer token scoped to a single METHOD + path"""
        now = int(time.time()) if now is None else now
        header = {
            "alg": "ES256",
            "typ": "JWT",
            "kid": self.key_name,
            "nonce": secrets.token_hex(16),
        }
        payload = {
            "sub": self.key_name,
            "iss": "cdp",
            "nbf": now,
            "exp": now + self.JWT_TTL_SECONDS,
            "uri": f"{method} {self.HOST}{path}",
        }
        signing_input = (
            _b64url(json.dumps(header, separators=(",", ":")).encode())
            + "."
            + _b64url(json.dumps(payload, separators=(",", ":")).encode())
        )
        der = self.private_key.sign(signing_input.encode("ascii"), ec.ECDSA(hashes.SHA256()))
        # JWS wants raw r||s, 32 bytes each
        r, s = decode_dss_signature(der)
        signature = r.to_bytes(32, "big") + s.to_bytes(32, "big")
        return f"{signing_input}.{_b64url(signature)}"

    def _request(self, method: str, path: str, data: dict = None, params: dict = None) -> dict:
        """Make authenticated request. Query params are not part of the signed uri."""
        url = f"{self.BASE_URL}{path}"
        headers = {
            "Authorization": f"Bearer {self.build_jwt(method, path)}",
            "Content-Type": "application/json",
        }

        try:
            if method == "GET":
                resp = self.session.get(url, headers=headers, params=params, timeout=15)
            elif method == "POST":
                resp = self.session.post(url, headers=headers,
                                         data=json.dumps(data) if data else "", timeout=15)
            else:
                raise ValueError(f"Unknown method: {method}")

            try:
                body = resp.json()
            except ValueError:
                body = {"message": resp.text}

            if resp.status_code in [200, 201]:
                return body
            return {
                "error": True,
                "status": resp.status_code,
                "message": body.get("message") or body.get("error") or resp.text,
                "body": body,
            }

        except requests.RequestException as e:
            return {"error": True, "message": str(e)}

    # === Account Methods ===

    def get_accounts(self) -> Optional[list[ExchangeBalance]]:
        """All brokerage accounts. Returns None on API error."""
        result = self._request("GET", "/api/v3/brokerage/accounts", params={"limit": 250})
        if result.get("error"):
            print(f"[COINBASE] Error fetching accounts: {result.get('message', 'Unknown')}")
            return None

        balances = []
        for acc in result.get("accounts", []):
            balances.append(ExchangeBalance(
                id=acc.get("uuid", ""),
                name=acc.get("name", ""),
                currency=acc.get("currency", ""),
                available=float((acc.get("available_balance") or {}).get("value") or 0),
                hold=float((acc.get("hold") or {}).get("value") or 0),
                type=acc.get("type", ""),
            ))
        return balances

    # === Trading Methods ===

    def build_order_payload(self, request: TradeRequest, quote_size: float = 0.0) -> dict:
        """Advanced Trade order body. Buys at market spend quote_size USD."""
        if request.order_type == OrderType.LIMIT and request.limit_price:
            configuration = {
                "limit_limit_gtc": {
                    "base_size": _decimal_str(request.qty),
                    "limit_price": _decimal_str(request.limit_price),
                }
            }
        elif request.side == Side.BUY:
            configuration = {"market_market_ioc": {"quote_size": f"{quote_size:.2f}"}}
        else:
            configuration = {"market_market_ioc": {"base_size": _decimal_str(request.qty)}}

        return {
            "client_order_id": f"live_{int(time.time() * 1000)}_{secrets.token_hex(4)}",
            "product_id": request.symbol,
            "side": request.side.value.upper(),
            "order_configuration": configuration,
        }

    def place_order(self, payload: dict) -> dict:
        """Submit an order. A 200 with success=false is reported as an error too."""
        result = self._request("POST", "/api/v3/brokerage/orders", payload)
        if result.get("error"):
            return result
        if result.get("success") is False:
            failure = result.get("error_response") or {}
            return {
                "error": True,
                "status": 400,
                "message": failure.get("message") or failure.get("error") or "Order rejected",
                "body": result,
            }
        return result


def order_id_from_response(response: dict) -> Optional[str]:
    return (response.get("success_response") or {}).get("order_id") or response.get("order_id")


def is_permission_error(response: dict) -> bool:
    body = response.get("body") or {}
    message = str(response.get("message") or "")
    return (
        body.get("error") == "PERMISSION_DENIED"
        or "permission" in message.lower()
        or response.get("status") == 403
    )


def format_balances(balances: list[ExchangeBalance]) -> list[dict]:
    """Non-zero wallets plus USD, largest total first"""
    kept = [b for b in balances if b.total > 0 or b.currency == "USD"]
    kept.sort(key=lambda b: b.total, reverse=True)
    return [b.to_dict() for b in kept]


def find_balance(balances: list[ExchangeBalance], currency: str) -> Optional[ExchangeBalance]:
    for b in balances:
        if b.currency == currency:
            return b
    return None
