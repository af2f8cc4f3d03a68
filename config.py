"""
Configuration loaded from environment variables. Fail-fast on invalid values.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Config(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True, "extra": "ignore"}

    # Network endpoints (selection is external; these are just the inputs)
    rpc_endpoint: str = "https://api.mainnet-beta.solana.com"
    wss_endpoint: str = "wss://api.mainnet-beta.solana.com"
    commitment: str = "processed"
    rpc_timeout_sec: float = Field(default=10.0, gt=0)
    rpc_batch_size: int = Field(default=100, ge=1)

    # Strategy parameters (amounts in SOL)
    min_profit_threshold: float = Field(default=0.05, ge=0)
    max_position_size: float = Field(default=1000.0, gt=0)
    gas_buffer: float = Field(default=0.002, ge=0)
    min_liquidity_requirement: float = Field(default=1000.0, ge=0)
    price_impact_limit: float = Field(default=0.01, gt=0, le=1.0)
    slippage_tolerance: float = Field(default=0.005, ge=0, lt=0.5)
    # Per-venue overrides keyed by protocol name (e.g. "orca", "solend")
    venue_min_liquidity: dict[str, float] = Field(default_factory=dict)
    venue_min_profit: dict[str, float] = Field(default_factory=dict)

    # Monitoring
    scan_interval_sec: float = Field(default=1.0, gt=0)
    rescan_window: int = Field(default=1000, ge=1)
    rescan_backoff_sec: float = Field(default=1.0, ge=0)
    max_known_transactions: int = Field(default=100_000, ge=1)
    detail_fetch_retries: int = Field(default=3, ge=1)
    detail_retry_delay_sec: float = Field(default=0.25, ge=0)
    stream_reconnect_max: int = Field(default=5, ge=0)
    # Programs passed to logsSubscribe as "mentions"; empty = "all"
    stream_mentions: tuple[str, ...] = ()
    # Seconds added to the slot-time estimate when predicting execution time
    block_time_buffer_sec: float = Field(default=2.0, ge=0)
    slot_time_sec: float = Field(default=0.4, gt=0)

    # Risk management
    max_concurrent_trades: int = Field(default=3, ge=1)
    max_daily_loss: float = Field(default=10.0, gt=0)
    max_daily_transactions: int = Field(default=1000, ge=1)
    risk_check_interval_sec: float = Field(default=1.0, gt=0)
    stats_reset_period_sec: float = Field(default=86_400.0, gt=0)

    # Known external protocols: name -> program id
    dex_programs: dict[str, str] = Field(default_factory=lambda: {
        "orca": "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc",
        "orca_legacy": "DjVE6JNiYqPL2QXyCUUh8rNjHrbz9hXHNYt99MQ59qw1",
        "raydium": "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8",
        "jupiter": "JUP4Fb2cqiRUcaTHdrPC8h2gNsA2ETXiPDD33WcGuJB",
    })
    lending_programs: dict[str, str] = Field(default_factory=lambda: {
        "solend": "So1endDq2YkqhipRh3WViPa8hdiSpxWy6z3Z6tMCpAo",
        "mango": "mv3ekLzLbnVPNxjSKvqBpU3ZeZXPQdEC3bp5MDEBG68",
    })

    # Scoring model
    model_hidden_layers: tuple[int, ...] = (64, 32, 16)
    model_learning_rate: float = Field(default=0.001, gt=0)
    model_batch_size: int = Field(default=32, ge=1)
    model_epochs: int = Field(default=100, ge=1)
    model_validation_split: float = Field(default=0.2, ge=0, lt=1.0)
    model_early_stopping_patience: int = Field(default=10, ge=1)
    model_l2_alpha: float = Field(default=0.0001, ge=0)
    # Outcomes buffered before a retrain is triggered
    retrain_buffer_size: int = Field(default=32, ge=2)
    untrained_score: float = Field(default=0.5, ge=0, le=1.0)

    # Transaction execution
    max_retries: int = Field(default=3, ge=1)
    retry_delay_sec: float = Field(default=0.5, ge=0)
    confirm_timeout_sec: float = Field(default=30.0, gt=0)
    confirm_poll_sec: float = Field(default=0.5, gt=0)
    # Priority fee in micro-lamports per compute unit
    priority_fee_base: int = Field(default=50_000, ge=0)
    priority_fee_profit_share: float = Field(default=0.1, ge=0)
    priority_fee_cap: int = Field(default=1_000_000, ge=0)
    compute_unit_limit: int = Field(default=200_000, ge=1, le=1_400_000)

    # Performance monitoring
    performance_log_interval_sec: float = Field(default=60.0, gt=0)
    success_rate_alert: float = Field(default=0.8, ge=0, le=1.0)

    # Modes
    paper_trading: bool = True
    log_level: str = "INFO"

    # Plugins: "package.module:callable" returning adapters / signer
    adapters_factory: str = ""
    signer_factory: str = ""


def load_config() -> Config:
    """Load and validate config from environment. Raises on invalid values."""
    return Config()
