"""設定管理モジュール."""

import ipaddress
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

KNOWN_PROVIDERS = ("coinbase", "kraken")


class Settings(BaseSettings):
    """アプリケーション設定."""

    # 取引設定
    symbol: str = Field("SOL-USD", description="取引ペア (BASE-QUOTE)")
    tick_interval_seconds: float = Field(30.0, gt=0, description="ティック間隔 (秒)")

    # ラダー設定 (比率: 0.01 = 1%)
    levels_per_side: int = Field(5, ge=1, description="片側のレベル数")
    buy_step_pct: float = Field(0.01, description="BUYレベル間隔")
    sell_step_pct: float = Field(0.01, description="SELLレベル間隔")
    order_notional_usd: float = Field(25.0, gt=0, description="1注文あたりの想定元本 (USD)")
    ladder_refill: Literal["none", "top_up"] = Field(
        "none", description="約定済みレベルの補充方針 (none: 再アンカーまで補充しない)"
    )

    # パケット容量
    buy_packet_capacity: int = Field(5, ge=1, description="BUY側パケット容量")
    sell_packet_capacity: int = Field(5, ge=1, description="SELL側パケット容量")

    # 初期残高
    start_cash_usd: float = Field(1000.0, ge=0, description="初期現金 (USD)")
    start_asset_qty: float = Field(0.0, ge=0, description="初期保有数量")

    # 再アンカー設定
    reanchor_enabled: bool = Field(True, description="自動再アンカーを有効化")
    reanchor_drift_pct: float = Field(0.04, description="再アンカー発動の乖離率")
    reanchor_cooldown_minutes: float = Field(45.0, ge=0, description="再アンカー後のクールダウン (分)")
    reanchor_no_fill_minutes: float = Field(10.0, ge=0, description="直近約定後の待機時間 (分)")
    reanchor_max_usage_pct: float = Field(0.80, description="この使用率以上では再アンカーしない")

    # ステータス
    recent_fills_limit: int = Field(10, ge=1, description="ステータスに表示する直近約定数")

    # 価格取得
    price_providers: list[str] = Field(
        default_factory=lambda: ["coinbase", "kraken"], description="価格プロバイダー (優先順)"
    )
    price_timeout_seconds: float = Field(15.0, gt=0, description="リクエスト単位のタイムアウト (秒)")
    price_budget_seconds: float = Field(25.0, gt=0, description="価格取得全体のタイムアウト (秒)")
    price_retry_rounds: int = Field(2, ge=1, description="プロバイダー一巡の試行回数")
    price_retry_backoff_seconds: float = Field(1.0, ge=0, description="試行間の待機時間 (秒)")
    dns_nameservers: list[str] = Field(
        default_factory=lambda: ["1.1.1.1", "8.8.8.8"],
        description="名前解決に使うDNSサーバー (空ならOSのリゾルバー)",
    )

    # 永続化
    state_file: str = Field("data/grid_state.json", description="スナップショット保存先")
    persist_timeout_seconds: float = Field(5.0, gt=0, description="保存/読込のタイムアウト (秒)")

    # HTTPステータス
    status_host: str = Field("0.0.0.0", description="ステータスサーバーのホスト")
    status_port: int = Field(10000, description="ステータスサーバーのポート")
    keepalive_url: str | None = Field(None, description="外部公開URL (スリープ防止用)")
    keepalive_interval_seconds: float = Field(30.0, gt=0, description="キープアライブ間隔 (秒)")
    heartbeat_interval_seconds: float = Field(60.0, gt=0, description="ハートビートログ間隔 (秒)")

    log_level: str = Field("INFO", description="ログレベル")

    @field_validator("buy_step_pct", "sell_step_pct")
    @classmethod
    def validate_step(cls, v: float) -> float:
        """レベル間隔は0-1の範囲である必要がある."""
        if not 0 < v < 1:
            raise ValueError("step pct must be between 0 and 1")
        return v

    @field_validator("reanchor_drift_pct", "reanchor_max_usage_pct")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        """比率は(0, 1]の範囲である必要がある."""
        if not 0 < v <= 1:
            raise ValueError("fraction must be in (0, 1]")
        return v

    @field_validator("price_providers")
    @classmethod
    def validate_providers(cls, v: list[str]) -> list[str]:
        """既知のプロバイダーのみ許可."""
        names = [name.strip().lower() for name in v]
        if not names:
            raise ValueError("at least one price provider is required")
        unknown = [name for name in names if name not in KNOWN_PROVIDERS]
        if unknown:
            raise ValueError(f"unknown price providers: {', '.join(unknown)}")
        return names

    @field_validator("dns_nameservers")
    @classmethod
    def validate_nameservers(cls, v: list[str]) -> list[str]:
        """DNSサーバーはIPアドレスで指定する."""
        servers = [server.strip() for server in v]
        for server in servers:
            try:
                ipaddress.ip_address(server)
            except ValueError as e:
                raise ValueError(f"invalid DNS server address: {server!r}") from e
        return servers

    @model_validator(mode="after")
    def validate_buy_ladder_positive(self) -> "Settings":
        """最も遠いBUYレベルが正の価格になることを確認."""
        if self.buy_step_pct * self.levels_per_side >= 1:
            raise ValueError("buy_step_pct * levels_per_side must be below 1")
        return self

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }
