from __future__ import annotations

import datetime as dt
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import upstox_client
from upstox_client import ApiClient
from upstox_client.rest import ApiException

LOG = logging.getLogger(__name__)

T = TypeVar("T")

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class UpstoxConfig:
    access_token: str
    sandbox: bool = False
    algo_name: str = "iron_condor"


@dataclass(frozen=True)
class PlacedOrder:
    """Normalized view of PlaceOrderV3Response."""

    success: bool
    order_id: Optional[str]
    status: Optional[str] = None
    message: Optional[str] = None
    raw: Any = None


class CredentialError(RuntimeError):
    """Raised when broker credentials are unavailable or incomplete."""


def _read_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    text = value.strip()
    return text or None


def load_upstox_credentials(secrets: Optional[object] = None, *, sandbox: bool = False, algo_name: Optional[str] = None) -> UpstoxConfig:
    """
    Resolve the Upstox session from ``secrets`` or the environment.

    Required:
        - UPSTOX_ACCESS_TOKEN
    Optional:
        - UPSTOX_SANDBOX
        - UPSTOX_ALGO_NAME
    """

    token = getattr(secrets, "upstox_access_token", None) or _read_env("UPSTOX_ACCESS_TOKEN")
    if not token:
        raise CredentialError("UPSTOX_ACCESS_TOKEN not set; export it before running the engine.")
    env_sandbox = str(os.getenv("UPSTOX_SANDBOX", "false")).lower() in {"1", "true", "yes"}
    return UpstoxConfig(
        access_token=token,
        sandbox=sandbox or env_sandbox,
        algo_name=algo_name or os.getenv("UPSTOX_ALGO_NAME", "iron_condor"),
    )


def _api_version() -> str:
    return os.getenv("UPSTOX_API_VERSION", "2.0")


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return {}


def with_retry(fn: Callable[[], T], *, retries: int = 2, base_delay: float = 0.2) -> T:
    last_exc: Optional[Exception] = None
    for attempt in range(1, retries + 1):
        try:
            return fn()
        except ApiException as exc:  # pragma: no cover - network dependent
            if exc.status == 401:
                raise
            last_exc = exc
            sleep_for = base_delay + (attempt - 1) * base_delay
            LOG.warning("Upstox API error %s (attempt %s/%s)", exc, attempt, retries)
            time.sleep(sleep_for)
    assert last_exc is not None
    raise last_exc


def normalize_place_order_response(resp: Any) -> PlacedOrder:
    """Coerce a PlaceOrderV3Response/model/dict into a PlacedOrder."""

    if resp is None:
        return PlacedOrder(False, None, message="empty_response", raw=resp)
    payload = _as_dict(resp)
    data = payload.get("data")
    status = payload.get("status")
    order_id = None
    if isinstance(data, dict):
        order_ids = data.get("order_ids") or []
        order_id = data.get("order_id") or (order_ids[0] if order_ids else None)
    if order_id is None:
        order_id = payload.get("order_id")
    success = bool(order_id) or str(status or "").lower() in {"success", "complete", "completed"}
    return PlacedOrder(
        success,
        str(order_id) if order_id is not None else None,
        status=str(status) if status is not None else None,
        message=payload.get("message"),
        raw=payload,
    )


class UpstoxSession:
    """Thin, typed wrapper around the official Upstox SDK. All calls are blocking."""

    def __init__(self, cfg: Optional[UpstoxConfig] = None):
        if cfg is None:
            cfg = load_upstox_credentials()
        configuration = upstox_client.Configuration(sandbox=cfg.sandbox)
        configuration.access_token = cfg.access_token
        self._api_client = ApiClient(configuration)
        self._cfg = cfg
        self.options_api = upstox_client.OptionsApi(self._api_client)
        self.order_api = upstox_client.OrderApi(self._api_client)
        self.order_api_v3 = upstox_client.OrderApiV3(self._api_client)
        self.mq_v3 = upstox_client.MarketQuoteV3Api(self._api_client)
        self.charge_api = upstox_client.ChargeApi(self._api_client)
        self.user_api = upstox_client.UserApi(self._api_client)

    @property
    def config(self) -> UpstoxConfig:
        return self._cfg

    def get_option_contracts(self, instrument_key: str, expiry_date: Optional[str] = None) -> List[Dict[str, Any]]:
        """Contract metadata for an underlying; every expiry when ``expiry_date`` is omitted."""

        kwargs: Dict[str, str] = {"instrument_key": instrument_key}
        if expiry_date:
            if not _DATE_RE.fullmatch(expiry_date):
                raise ValueError("bad expiry format: %r" % expiry_date)
            kwargs["expiry_date"] = expiry_date

        def _call() -> List[Dict[str, Any]]:
            resp = _as_dict(self.options_api.get_option_contracts(**kwargs))
            return list(resp.get("data") or [])

        return with_retry(_call)

    def get_ltp(self, instrument_keys: Sequence[str] | str) -> Dict[str, Dict[str, Any]]:
        """MarketQuote V3 LTP, keyed by ``instrument_token`` (falls back to the response key)."""

        keys = [instrument_keys] if isinstance(instrument_keys, str) else [str(k) for k in instrument_keys if k]
        if not keys:
            raise ValueError("instrument_keys must be non-empty")

        def _call() -> Dict[str, Dict[str, Any]]:
            resp = _as_dict(self.mq_v3.get_ltp(instrument_key=",".join(keys)))
            quotes: Dict[str, Dict[str, Any]] = {}
            for key, row in (resp.get("data") or {}).items():
                row = _as_dict(row)
                quotes[str(row.get("instrument_token") or key)] = row
            return quotes

        return with_retry(_call)

    def place_market_order(self, instrument_key: str, side: str, qty: int, *, product: str = "D") -> PlacedOrder:
        body = upstox_client.PlaceOrderV3Request(
            instrument_token=instrument_key,
            transaction_type=side.upper(),
            order_type="MARKET",
            product=product,
            validity="DAY",
            quantity=int(qty),
            disclosed_quantity=0,
            trigger_price=0.0,
            price=0.0,
            is_amo=False,
            slice=False,
            tag=self._cfg.algo_name,
        )
        LOG.info("[ORDER] %s %s qty=%s", side.upper(), instrument_key, qty)
        resp = self.order_api_v3.place_order(body, algo_name=self._cfg.algo_name)
        return normalize_place_order_response(resp)

    def get_order_details(self, order_id: str) -> Dict[str, Any]:
        resp = _as_dict(self.order_api.get_order_details(_api_version(), order_id=order_id))
        return _as_dict(resp.get("data"))

    def post_margin(self, instruments: Sequence[Dict[str, Any]]) -> float:
        body = upstox_client.MarginRequest(
            instruments=[
                upstox_client.Instrument(
                    instrument_key=item["instrument_key"],
                    quantity=int(item["quantity"]),
                    product=item.get("product", "D"),
                    transaction_type=item["transaction_type"],
                )
                for item in instruments
            ]
        )

        def _call() -> float:
            data = _as_dict(_as_dict(self.charge_api.post_margin(body)).get("data"))
            return float(data.get("final_margin") or data.get("required_margin") or 0.0)

        return with_retry(_call)

    def get_available_margin(self) -> float:
        def _call() -> float:
            data = _as_dict(_as_dict(self.user_api.get_user_fund_margin(_api_version())).get("data"))
            equity = _as_dict(data.get("equity"))
            return float(equity.get("available_margin") or 0.0)

        return with_retry(_call)

    def market_streamer(self, instrument_keys: Sequence[str], mode: str = "ltpc") -> Any:
        return upstox_client.MarketDataStreamerV3(self._api_client, list(instrument_keys), mode)


def expiry_iso(day: dt.date) -> str:
    return day.strftime("%Y-%m-%d")


__all__ = [
    "CredentialError",
    "PlacedOrder",
    "UpstoxConfig",
    "UpstoxSession",
    "expiry_iso",
    "load_upstox_credentials",
    "normalize_place_order_response",
    "with_retry",
]
