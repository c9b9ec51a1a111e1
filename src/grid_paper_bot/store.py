"""スナップショット永続化モジュール.

エンジン状態をバージョン付きJSONとして保存・復元します。
旧形式 (version 1, バージョンなし) は読込時に一度だけ現行形式へ移行します。
"""

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import fields, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError

from grid_paper_bot.config import Settings
from grid_paper_bot.models import EngineState

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 2

_state_adapter = TypeAdapter(EngineState)


class PersistenceError(Exception):
    """スナップショットの保存・読込に失敗."""


def dump_state(state: EngineState) -> dict[str, Any]:
    """エンジン状態を保存用 dict に変換."""
    return {
        "version": SNAPSHOT_VERSION,
        "saved_at": datetime.now(timezone.utc).isoformat(),
        "state": _state_adapter.dump_python(state, mode="json"),
    }


def load_state(payload: dict[str, Any], config: Settings) -> EngineState:
    """
    保存用 dict からエンジン状態を復元.

    オフセットのない時刻はUTCとして扱う。

    Args:
        payload: スナップショット
        config: アプリケーション設定（旧形式の既定値に使用）

    Returns:
        EngineState: 復元した状態

    Raises:
        PersistenceError: 未対応バージョンまたはスキーマ不一致
    """
    payload = migrate(payload, config)
    try:
        state = _state_adapter.validate_python(payload["state"])
    except ValidationError as e:
        raise PersistenceError(f"Invalid snapshot: {e}") from e
    _assume_utc(state)
    return state


def _assume_utc(obj: Any) -> None:
    # オフセットなしの時刻はUTCとみなす（エンジンは aware な時刻同士で比較する）
    for f in fields(obj):
        value = getattr(obj, f.name)
        if isinstance(value, datetime) and value.tzinfo is None:
            setattr(obj, f.name, value.replace(tzinfo=timezone.utc))
        elif is_dataclass(value):
            _assume_utc(value)
        elif isinstance(value, list):
            for item in value:
                if is_dataclass(item):
                    _assume_utc(item)


def migrate(payload: dict[str, Any], config: Settings) -> dict[str, Any]:
    """
    スナップショットを現行バージョンへ移行.

    Raises:
        PersistenceError: 未対応バージョン
    """
    version = payload.get("version", 1)
    if not isinstance(version, int) or version > SNAPSHOT_VERSION or version < 1:
        raise PersistenceError(f"Unsupported snapshot version: {version!r}")

    if version == 1:
        logger.info("Migrating snapshot from version 1")
        try:
            state = _migrate_v1_state(payload, config)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise PersistenceError(f"Invalid version 1 snapshot: {e!r}") from e
        payload = {
            "version": SNAPSHOT_VERSION,
            "saved_at": payload.get("saved_at"),
            "state": state,
        }

    if not isinstance(payload.get("state"), dict):
        raise PersistenceError("Snapshot has no state section")
    return payload


def _migrate_v1_state(legacy: dict[str, Any], config: Settings) -> dict[str, Any]:
    # version 1 はフラットな形式で、多くのキーが省略され得る
    fallback_time = legacy.get("saved_at") or datetime.now(timezone.utc).isoformat()

    positions = []
    for i, raw in enumerate(legacy.get("positions") or [], 1):
        entry = float(raw["entry_price"])
        qty = float(raw["quantity"])
        positions.append(
            {
                "id": int(raw.get("id", i)),
                "entry_price": entry,
                "quantity": qty,
                "cost_basis": float(raw.get("cost_basis", entry * qty)),
                "opened_at": raw.get("opened_at") or fallback_time,
            }
        )

    total_qty = sum(p["quantity"] for p in positions)
    average = sum(p["cost_basis"] for p in positions) / total_qty if total_qty > 0 else None

    return {
        "balances": {
            "cash": legacy.get("cash", config.start_cash_usd),
            "asset_qty": legacy.get("asset_qty", config.start_asset_qty),
        },
        "anchor": {
            "anchor_price": legacy.get("anchor_price"),
            "created_at": legacy.get("anchor_created_at"),
        },
        "buy_levels": _migrate_v1_levels(legacy.get("buy_levels"), "BUY"),
        "sell_levels": _migrate_v1_levels(legacy.get("sell_levels"), "SELL"),
        "positions": positions,
        "stats": {
            "fill_count": legacy.get("fill_count", 0),
            "buy_count": legacy.get("buy_count", 0),
            "sell_count": legacy.get("sell_count", 0),
            "realized_pnl": legacy.get("realized_pnl", 0.0),
            "average_entry_price": average,
        },
        "reanchor": {
            "last_reanchor_at": legacy.get("last_reanchor_at"),
            "last_fill_at": legacy.get("last_fill_at"),
        },
        "next_position_id": max((p["id"] for p in positions), default=0) + 1,
        "last_price": legacy.get("last_price"),
        "last_price_source": legacy.get("last_price_source"),
    }


def _migrate_v1_levels(raw_levels: Any, side: str) -> list[dict[str, Any]]:
    levels = []
    for i, raw in enumerate(raw_levels or [], 1):
        status = str(raw.get("status", "WAITING")).upper()
        levels.append(
            {
                "side": side,
                "index": int(raw.get("index", i)),
                "price": float(raw["price"]),
                # 旧形式の HIT は表示用の約定済みマーク
                "status": "FILLED" if status in ("FILLED", "HIT") else "WAITING",
            }
        )
    return levels


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """
    JSONを一時ファイル + fsync + rename でアトミックに書き込む.

    一時ファイル名は書き込みごとに一意で、同じパスへの書き込みが重なっても
    互いの一時ファイルを上書きしない。
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(payload, indent=2, ensure_ascii=False)

    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f"{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        tmp_path = Path(handle.name)
        try:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        except OSError:
            handle.close()
            tmp_path.unlink(missing_ok=True)
            raise

    try:
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


class SnapshotStore:
    """
    スナップショットストア.

    ファイルI/Oはワーカースレッドで実行し、persist_timeout_seconds で打ち切る。
    """

    def __init__(self, config: Settings):
        """
        ストアを初期化.

        Args:
            config: アプリケーション設定
        """
        self.config = config
        self.path = Path(config.state_file)
        self.timeout = config.persist_timeout_seconds

    def read(self) -> EngineState | None:
        """スナップショットを同期的に読み込む（ファイルがなければ None）."""
        if not self.path.is_file():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read {self.path}: {e}") from e
        if not isinstance(payload, dict):
            raise PersistenceError(f"Expected JSON object at {self.path}")
        return load_state(payload, self.config)

    def write(self, state: EngineState) -> None:
        """スナップショットを同期的に書き込む."""
        self._write_payload(dump_state(state))

    def _write_payload(self, payload: dict[str, Any]) -> None:
        try:
            write_json_atomic(self.path, payload)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {self.path}: {e}") from e

    async def load_snapshot(self) -> EngineState | None:
        """
        前回のスナップショットを読み込む.

        Returns:
            EngineState | None: 復元した状態（保存がなければ None）

        Raises:
            PersistenceError: 読込失敗またはタイムアウト
        """
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.read), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise PersistenceError(f"Loading {self.path} timed out after {self.timeout}s") from e

    async def save_snapshot(self, state: EngineState) -> None:
        """
        スナップショットを保存.

        Raises:
            PersistenceError: 保存失敗またはタイムアウト
        """
        # シリアライズはイベントループ上で行い、スレッドには書き込みだけを渡す
        payload = dump_state(state)
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._write_payload, payload),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise PersistenceError(f"Saving {self.path} timed out after {self.timeout}s") from e
