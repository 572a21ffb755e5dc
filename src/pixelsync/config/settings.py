"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

from pixelsync.config.networks import DEFAULT_CHAIN_ID, get_network, resolve_rpc_url, resolve_ws_url
from pixelsync.core.colors import parse_hex_color
from pixelsync.errors import ConfigurationError

load_dotenv()


def _parse_known_bad(raw: Optional[str]) -> Dict[str, None]:
    """'0xd44d3394,0x69ea80d5' -> {selector: None}; fallbacks from env are always None."""
    if not raw:
        return {}
    return {s.strip().lower(): None for s in raw.split(",") if s.strip()}


@dataclass(frozen=True)
class Settings:
    chain_id: int
    rpc_url: Optional[str]
    ws_url: Optional[str]
    contract_address: Optional[str]
    private_key: Optional[str]
    account_address: Optional[str]
    # grid cache
    chunk_size: int
    max_region_size: int
    placeholder_color: int
    surface_width: int
    surface_height: int
    min_scale: float
    max_scale: float
    refresh_interval: float
    cache_max_chunks: int
    # scheduler
    max_concurrency: int
    inter_call_delay: float
    call_timeout: float
    overload_cooldown: float
    overload_delay_step: float
    # subscriptions
    reconnect_base_delay: float
    reconnect_max_attempts: int
    # degradation
    degrade_threshold: int
    degrade_backoff_base: float
    # writes and fees
    confirmation_timeout: float
    receipt_poll_interval: float
    eth_price_usd: float
    # ops
    log_level: str
    log_file: Optional[str]
    metrics_port: int
    known_bad_selectors: Dict[str, None] = field(default_factory=dict)

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging; secrets masked."""
        data = self.__dict__.copy()
        if data.get("private_key"):
            data["private_key"] = "***"
        return data

    @classmethod
    def load(cls) -> "Settings":
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{key} must be an integer, got {raw!r}", exc)

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            try:
                return float(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{key} must be a number, got {raw!r}", exc)

        def _color_env(key: str, default: str) -> int:
            raw = os.getenv(key) or default
            try:
                return parse_hex_color(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{key} is not a hex color: {raw!r}", exc)

        cfg = cls(
            chain_id=_int_env("PIXELSYNC_CHAIN_ID", DEFAULT_CHAIN_ID),
            rpc_url=os.getenv("PIXELSYNC_RPC_URL"),
            ws_url=os.getenv("PIXELSYNC_WS_URL"),
            contract_address=os.getenv("PIXELSYNC_CONTRACT_ADDRESS"),
            private_key=os.getenv("PIXELSYNC_PRIVATE_KEY"),
            account_address=os.getenv("PIXELSYNC_ACCOUNT_ADDRESS"),
            chunk_size=_int_env("PIXELSYNC_CHUNK_SIZE", 20),
            max_region_size=_int_env("PIXELSYNC_MAX_REGION_SIZE", 10),
            placeholder_color=_color_env("PIXELSYNC_PLACEHOLDER_COLOR", "#EFEFEF"),
            surface_width=_int_env("PIXELSYNC_SURFACE_WIDTH", 1280),
            surface_height=_int_env("PIXELSYNC_SURFACE_HEIGHT", 800),
            min_scale=_float_env("PIXELSYNC_MIN_SCALE", 1.0),
            max_scale=_float_env("PIXELSYNC_MAX_SCALE", 40.0),
            refresh_interval=_float_env("PIXELSYNC_REFRESH_INTERVAL_SEC", 1.0),
            cache_max_chunks=_int_env("PIXELSYNC_CACHE_MAX_CHUNKS", 0),
            max_concurrency=_int_env("PIXELSYNC_MAX_CONCURRENCY", 1),
            inter_call_delay=_float_env("PIXELSYNC_INTER_CALL_DELAY_SEC", 0.05),
            call_timeout=_float_env("PIXELSYNC_CALL_TIMEOUT_SEC", 10.0),
            overload_cooldown=_float_env("PIXELSYNC_OVERLOAD_COOLDOWN_SEC", 0.5),
            overload_delay_step=_float_env("PIXELSYNC_OVERLOAD_DELAY_STEP_SEC", 0.05),
            reconnect_base_delay=_float_env("PIXELSYNC_RECONNECT_BASE_DELAY_SEC", 2.0),
            reconnect_max_attempts=_int_env("PIXELSYNC_RECONNECT_MAX_ATTEMPTS", 5),
            degrade_threshold=_int_env("PIXELSYNC_DEGRADE_THRESHOLD", 3),
            degrade_backoff_base=_float_env("PIXELSYNC_DEGRADE_BACKOFF_SEC", 2.0),
            confirmation_timeout=_float_env("PIXELSYNC_CONFIRMATION_TIMEOUT_SEC", 20.0),
            receipt_poll_interval=_float_env("PIXELSYNC_RECEIPT_POLL_SEC", 1.0),
            eth_price_usd=_float_env("PIXELSYNC_ETH_PRICE_USD", 2500.0),
            log_level=os.getenv("PIXELSYNC_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("PIXELSYNC_LOG_FILE", "pixelsync.log") or None,
            metrics_port=_int_env("PIXELSYNC_METRICS_PORT", 0),
            known_bad_selectors=_parse_known_bad(os.getenv("PIXELSYNC_KNOWN_BAD_SELECTORS")),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    # Remote endpoint resolution. These raise ConfigurationError, which the
    # degradation controller treats as fatal-to-live (immediate fallback).

    def resolve_rpc_url(self) -> str:
        return resolve_rpc_url(self.chain_id, self.rpc_url)

    def resolve_ws_url(self) -> str:
        return resolve_ws_url(self.chain_id, self.resolve_rpc_url(), self.ws_url)

    def resolve_contract_address(self) -> str:
        from eth_utils import is_address, to_checksum_address

        address = self.contract_address or get_network(self.chain_id).contract_address
        if not address:
            raise ConfigurationError(f"Contract address not configured for chain ID: {self.chain_id}")
        if not is_address(address):
            raise ConfigurationError(f"Invalid contract address format: {address}")
        return to_checksum_address(address)

    def resolve_signer(self):
        """Local signing account, or None when writes go through the node's accounts."""
        if not self.private_key:
            return None
        from eth_account import Account

        try:
            return Account.from_key(self.private_key)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("PIXELSYNC_PRIVATE_KEY is not a valid key", exc)

    def resolve_account(self) -> Optional[str]:
        signer = self.resolve_signer()
        if signer is not None:
            return signer.address
        return self.account_address

    def _validate(self) -> None:
        if self.chunk_size <= 0:
            raise ConfigurationError("PIXELSYNC_CHUNK_SIZE must be > 0")
        if self.max_region_size <= 0:
            raise ConfigurationError("PIXELSYNC_MAX_REGION_SIZE must be > 0")
        if self.surface_width <= 0 or self.surface_height <= 0:
            raise ConfigurationError("Surface dimensions must be > 0")
        if self.min_scale <= 0 or self.min_scale > self.max_scale:
            raise ConfigurationError("Scale bounds must satisfy 0 < min <= max")
        if self.max_concurrency < 1:
            raise ConfigurationError("PIXELSYNC_MAX_CONCURRENCY must be >= 1")
        if self.inter_call_delay < 0:
            raise ConfigurationError("PIXELSYNC_INTER_CALL_DELAY_SEC must be >= 0")
        if self.call_timeout <= 0:
            raise ConfigurationError("PIXELSYNC_CALL_TIMEOUT_SEC must be > 0")
        if self.refresh_interval <= 0:
            raise ConfigurationError("PIXELSYNC_REFRESH_INTERVAL_SEC must be > 0")
        if self.reconnect_max_attempts < 1:
            raise ConfigurationError("PIXELSYNC_RECONNECT_MAX_ATTEMPTS must be >= 1")
        if self.degrade_threshold < 1:
            raise ConfigurationError("PIXELSYNC_DEGRADE_THRESHOLD must be >= 1")
        if self.cache_max_chunks < 0:
            raise ConfigurationError("PIXELSYNC_CACHE_MAX_CHUNKS must be >= 0")
        if self.max_region_size > self.chunk_size:
            logging.getLogger("pixelsync").info(
                json.dumps({"event": "config_region_exceeds_chunk",
                            "max_region_size": self.max_region_size,
                            "chunk_size": self.chunk_size})
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    logger = logging.getLogger("pixelsync")
    payload = {
        "event": "config_loaded",
        "chain_id": cfg.chain_id,
        "chunk_size": cfg.chunk_size,
        "max_region_size": cfg.max_region_size,
        "max_concurrency": cfg.max_concurrency,
        "refresh_interval": cfg.refresh_interval,
        "degrade_threshold": cfg.degrade_threshold,
        "signer": bool(cfg.private_key),
    }
    logger.info(json.dumps(payload))
