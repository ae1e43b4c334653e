import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, getcontext, localcontext
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import aiohttp
from aiohttp import web
from eth_utils import keccak, to_checksum_address

getcontext().prec = 80

LOGGER_NAME = "layered_options_indexer"
logger = logging.getLogger(LOGGER_NAME)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEFAULT_CONTRACT_ADDR = "0x5159326b4faf867eb45c324842e77543a8eae63d"
WORD_HEX_LEN = 64
BLOCK_TS_CACHE_MAX = 5000


def setup_logging(log_level: str = "info", log_file: Optional[str] = None) -> logging.Logger:
    """Configure the package logger: stdout always, plus an optional file."""
    level = getattr(logging, str(log_level).upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"invalid log level: {log_level}")
    logger.setLevel(level)
    logger.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def checksum_address(addr: str) -> str:
    return to_checksum_address(normalize_address(addr))


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    if len(topic) != WORD_HEX_LEN:
        raise ValueError(f"topic is not a 32-byte word: {topic}")
    return to_checksum_address("0x" + topic[-40:])


def decode_topic_int(topic: str) -> int:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    if len(topic) != WORD_HEX_LEN:
        raise ValueError(f"topic is not a 32-byte word: {topic}")
    return int(topic, 16)


def split_data_words(data: Optional[str]) -> List[int]:
    if not data:
        return []
    body = data[2:] if data.startswith("0x") else data
    if len(body) % WORD_HEX_LEN != 0:
        raise ValueError(f"data length {len(body)} is not a multiple of 32 bytes")
    return [int(body[i:i + WORD_HEX_LEN], 16) for i in range(0, len(body), WORD_HEX_LEN)]


def decimal_to_str(v: Optional[Decimal], places: int = 18) -> Optional[str]:
    if v is None:
        return None
    q = Decimal(10) ** -places
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, v.adjusted() + places + 2)
        return str(v.quantize(q))


def raw_to_decimal(value: int, decimals: int) -> Decimal:
    return Decimal(value) / (Decimal(10) ** decimals)


def format_units(value: int, decimals: int) -> str:
    d = raw_to_decimal(value, decimals)
    if d == 0:
        return "0"
    return format(d.normalize(), "f")


def timestamp_to_iso(ts: int) -> Optional[str]:
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")
    except (OverflowError, OSError, ValueError):
        return None


class DecodeError(ValueError):
    pass


@dataclass
class LogMeta:
    block_number: int
    block_hash: str
    transaction_hash: str
    log_index: int
    timestamp: Optional[int] = None


@dataclass
class OptionOpened:
    token_id: int
    creator: str
    base_asset: str
    strike_price: int
    expiration_time: int
    premium: int
    parent_id: int
    meta: LogMeta


@dataclass
class ChildOptionOpened:
    token_id: int
    parent_id: int
    creator: str
    strike_price: int
    expiration_time: int
    premium: int
    meta: LogMeta
    base_asset: Optional[str] = None


@dataclass
class OptionExercised:
    token_id: int
    exerciser: str
    payout: int
    meta: LogMeta


@dataclass
class BalanceTransferred:
    operator: str
    from_addr: str
    to_addr: str
    token_id: int
    value: int
    meta: LogMeta


ChainEvent = Union[OptionOpened, ChildOptionOpened, OptionExercised, BalanceTransferred]


def _log_meta(raw: Dict[str, Any]) -> LogMeta:
    block_hash = raw.get("blockHash")
    tx_hash = raw.get("transactionHash")
    if not block_hash or not tx_hash or raw.get("blockNumber") is None:
        raise DecodeError("log is missing block or transaction provenance")
    return LogMeta(
        block_number=parse_hex_int(raw["blockNumber"]),
        block_hash=str(block_hash).lower(),
        transaction_hash=str(tx_hash).lower(),
        log_index=parse_hex_int(raw.get("logIndex")),
    )


def _decode_option_created(topics: List[str], words: List[int], meta: LogMeta) -> OptionOpened:
    return OptionOpened(
        token_id=decode_topic_int(topics[1]),
        creator=decode_topic_address(topics[2]),
        base_asset=decode_topic_address(topics[3]),
        strike_price=words[0],
        expiration_time=words[1],
        premium=words[2],
        parent_id=words[3],
        meta=meta,
    )


def _decode_child_option_created(
    topics: List[str], words: List[int], meta: LogMeta
) -> ChildOptionOpened:
    return ChildOptionOpened(
        token_id=decode_topic_int(topics[1]),
        parent_id=decode_topic_int(topics[2]),
        creator=decode_topic_address(topics[3]),
        strike_price=words[0],
        expiration_time=words[1],
        premium=words[2],
        meta=meta,
    )


def _decode_option_exercised(
    topics: List[str], words: List[int], meta: LogMeta
) -> OptionExercised:
    return OptionExercised(
        token_id=decode_topic_int(topics[1]),
        exerciser=decode_topic_address(topics[2]),
        payout=words[0],
        meta=meta,
    )


def _decode_transfer_single(
    topics: List[str], words: List[int], meta: LogMeta
) -> BalanceTransferred:
    return BalanceTransferred(
        operator=decode_topic_address(topics[1]),
        from_addr=decode_topic_address(topics[2]),
        to_addr=decode_topic_address(topics[3]),
        token_id=words[0],
        value=words[1],
        meta=meta,
    )


@dataclass
class EventSpec:
    name: str
    signature: str
    indexed_count: int
    word_count: int
    decoder: Callable[[List[str], List[int], LogMeta], ChainEvent]
    topic0: str = field(init=False)

    def __post_init__(self) -> None:
        self.topic0 = "0x" + keccak(text=self.signature).hex()


# Order matters: creations are applied before exercises and transfers in a tick.
EVENT_SPECS: List[EventSpec] = [
    EventSpec(
        "OptionCreated",
        "OptionCreated(uint256,address,address,uint256,uint256,uint256,uint256)",
        3,
        4,
        _decode_option_created,
    ),
    EventSpec(
        "ChildOptionCreated",
        "ChildOptionCreated(uint256,uint256,address,uint256,uint256,uint256)",
        3,
        3,
        _decode_child_option_created,
    ),
    EventSpec(
        "OptionExercised",
        "OptionExercised(uint256,address,uint256)",
        2,
        1,
        _decode_option_exercised,
    ),
    EventSpec(
        "TransferSingle",
        "TransferSingle(address,address,address,uint256,uint256)",
        3,
        2,
        _decode_transfer_single,
    ),
]
EVENT_SPECS_BY_NAME: Dict[str, EventSpec] = {s.name: s for s in EVENT_SPECS}


def decode_log(spec: EventSpec, raw: Dict[str, Any]) -> ChainEvent:
    topics = [str(t) for t in (raw.get("topics") or [])]
    if not topics or topics[0].lower() != spec.topic0:
        raise DecodeError(f"topic0 does not match {spec.name}")
    if len(topics) != spec.indexed_count + 1:
        raise DecodeError(
            f"{spec.name} expects {spec.indexed_count} indexed topics, got {len(topics) - 1}"
        )
    try:
        words = split_data_words(raw.get("data"))
    except ValueError as e:
        raise DecodeError(str(e)) from e
    if len(words) < spec.word_count:
        raise DecodeError(f"{spec.name} expects {spec.word_count} data words, got {len(words)}")
    meta = _log_meta(raw)
    try:
        return spec.decoder(topics, words, meta)
    except ValueError as e:
        raise DecodeError(f"{spec.name}: {e}") from e


def decode_logs(
    spec: EventSpec, logs: List[Dict[str, Any]]
) -> Tuple[List[ChainEvent], List[Tuple[Dict[str, Any], DecodeError]]]:
    events: List[ChainEvent] = []
    failures: List[Tuple[Dict[str, Any], DecodeError]] = []
    for raw in logs:
        try:
            events.append(decode_log(spec, raw))
        except DecodeError as e:
            failures.append((raw, e))
        except Exception as e:
            failures.append((raw, DecodeError(f"{type(e).__name__}: {e}")))
    return events, failures


class TxType(str, Enum):
    OPTION_CREATED = "OPTION_CREATED"
    CHILD_OPTION_CREATED = "CHILD_OPTION_CREATED"
    OPTION_EXERCISED = "OPTION_EXERCISED"
    OPTION_TRANSFERRED = "OPTION_TRANSFERRED"


@dataclass
class OptionRecord:
    token_id: int
    creator: str
    base_asset: Optional[str]
    strike_price: int
    expiration_time: int
    premium: int
    parent_id: int
    is_parent: bool
    block_number: int
    block_hash: str
    transaction_hash: str
    log_index: int
    timestamp: int
    is_exercised: bool = False
    exerciser: Optional[str] = None
    payout: Optional[int] = None

    def is_expired(self, now: float) -> bool:
        return self.expiration_time < now

    def is_active(self, now: float) -> bool:
        return not self.is_exercised and not self.is_expired(now)

    def sort_key(self) -> Tuple[int, int, int]:
        return (self.timestamp, self.block_number, self.log_index)

    def to_dict(self, now: float, decimals: int = 18) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "tokenId": self.token_id,
            "creator": self.creator,
            "baseAsset": self.base_asset,
            "strikePrice": self.strike_price,
            "expirationTime": self.expiration_time,
            "premium": self.premium,
            "parentId": self.parent_id,
            "isParent": self.is_parent,
            "isExercised": self.is_exercised,
            "blockNumber": self.block_number,
            "blockHash": self.block_hash,
            "transactionHash": self.transaction_hash,
            "timestamp": self.timestamp,
            "formattedStrike": format_units(self.strike_price, decimals),
            "formattedPremium": format_units(self.premium, decimals),
            "expirationDate": timestamp_to_iso(self.expiration_time),
            "isExpired": self.is_expired(now),
        }
        if self.is_exercised:
            out["exerciser"] = self.exerciser
            out["payout"] = self.payout
            out["formattedPayout"] = (
                format_units(self.payout, decimals) if self.payout is not None else None
            )
        return out


@dataclass(frozen=True)
class TransactionRecord:
    type: TxType
    token_id: int
    timestamp: int
    transaction_hash: str
    block_number: int
    creator: Optional[str] = None
    parent_id: Optional[int] = None
    exerciser: Optional[str] = None
    payout: Optional[int] = None
    operator: Optional[str] = None
    from_addr: Optional[str] = None
    to_addr: Optional[str] = None
    value: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "type": self.type.value,
            "tokenId": self.token_id,
            "timestamp": self.timestamp,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
        }
        optional = {
            "creator": self.creator,
            "parentId": self.parent_id,
            "exerciser": self.exerciser,
            "payout": self.payout,
            "operator": self.operator,
            "from": self.from_addr,
            "to": self.to_addr,
            "value": self.value,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        return out


class StateStore:
    """In-memory tables rebuilt from the event log.

    Options are keyed by token id, balances by checksummed owner then token id,
    and transactions are kept in insertion order. Balance entries never hold
    zero: an entry that reaches zero is removed.
    """

    def __init__(self) -> None:
        self.options: Dict[int, OptionRecord] = {}
        self.balances: Dict[str, Dict[int, int]] = {}
        self.transactions: List[TransactionRecord] = []

    def put_option(self, record: OptionRecord) -> None:
        self.options[record.token_id] = record

    def get_option(self, token_id: int) -> Optional[OptionRecord]:
        return self.options.get(token_id)

    def mark_exercised(self, token_id: int, exerciser: str, payout: int) -> bool:
        record = self.options.get(token_id)
        if record is None:
            return False
        record.is_exercised = True
        record.exerciser = exerciser
        record.payout = payout
        return True

    def adjust_balance(self, owner: str, token_id: int, delta: int) -> int:
        user_balances = self.balances.setdefault(owner, {})
        new_balance = max(0, user_balances.get(token_id, 0) + delta)
        if new_balance > 0:
            user_balances[token_id] = new_balance
        else:
            user_balances.pop(token_id, None)
        if not user_balances:
            self.balances.pop(owner, None)
        return new_balance

    def get_balances(self, owner: str) -> Dict[int, int]:
        return dict(self.balances.get(owner, {}))

    def append_transaction(self, record: TransactionRecord) -> None:
        self.transactions.append(record)

    def list_options(self) -> List[OptionRecord]:
        return list(self.options.values())

    def recent_transactions(self, limit: int) -> List[TransactionRecord]:
        if limit <= 0:
            return []
        return list(reversed(self.transactions[-limit:]))

    def counts(self) -> Dict[str, int]:
        return {
            "options": len(self.options),
            "holders": len(self.balances),
            "transactions": len(self.transactions),
        }


def is_mint_or_burn(event: ChainEvent) -> bool:
    if not isinstance(event, BalanceTransferred):
        return False
    return ZERO_ADDRESS in (event.from_addr, event.to_addr)


class EventProcessor:
    def __init__(self, store: StateStore):
        self.store = store
        self.stats: Dict[str, int] = {
            "applied_events": 0,
            "process_errors": 0,
            "dropped_exercises": 0,
            "skipped_mint_burn": 0,
        }

    def apply_batch(self, events: List[ChainEvent]) -> int:
        applied = 0
        for event in events:
            try:
                self.apply(event)
                applied += 1
            except Exception:
                self.stats["process_errors"] += 1
                logger.exception(
                    "failed to apply %s from tx %s",
                    type(event).__name__,
                    getattr(getattr(event, "meta", None), "transaction_hash", "?"),
                )
        self.stats["applied_events"] += applied
        return applied

    def apply(self, event: ChainEvent) -> None:
        if isinstance(event, (OptionOpened, ChildOptionOpened)):
            self._apply_option_opened(event)
        elif isinstance(event, OptionExercised):
            self._apply_option_exercised(event)
        elif isinstance(event, BalanceTransferred):
            self._apply_balance_transferred(event)
        else:
            raise TypeError(f"unsupported event type: {type(event).__name__}")

    @staticmethod
    def _timestamp(meta: LogMeta) -> int:
        if meta.timestamp is None:
            raise ValueError(f"block timestamp unresolved for {meta.block_hash}")
        return meta.timestamp

    def _apply_option_opened(self, event: Union[OptionOpened, ChildOptionOpened]) -> None:
        meta = event.meta
        ts = self._timestamp(meta)
        base_asset = event.base_asset
        if base_asset is None and event.parent_id != 0:
            parent = self.store.get_option(event.parent_id)
            if parent is not None:
                base_asset = parent.base_asset

        record = OptionRecord(
            token_id=event.token_id,
            creator=event.creator,
            base_asset=base_asset,
            strike_price=event.strike_price,
            expiration_time=event.expiration_time,
            premium=event.premium,
            parent_id=event.parent_id,
            is_parent=event.parent_id == 0,
            block_number=meta.block_number,
            block_hash=meta.block_hash,
            transaction_hash=meta.transaction_hash,
            log_index=meta.log_index,
            timestamp=ts,
        )
        self.store.put_option(record)
        self.store.append_transaction(
            TransactionRecord(
                type=TxType.OPTION_CREATED if record.is_parent else TxType.CHILD_OPTION_CREATED,
                token_id=record.token_id,
                timestamp=ts,
                transaction_hash=meta.transaction_hash,
                block_number=meta.block_number,
                creator=record.creator,
                parent_id=record.parent_id,
            )
        )
        logger.debug(
            "%s option created: token #%s", "parent" if record.is_parent else "child", record.token_id
        )

    def _apply_option_exercised(self, event: OptionExercised) -> None:
        meta = event.meta
        ts = self._timestamp(meta)
        if self.store.mark_exercised(event.token_id, event.exerciser, event.payout):
            logger.debug("option exercised: token #%s by %s", event.token_id, event.exerciser)
        else:
            self.stats["dropped_exercises"] += 1
            logger.debug("exercise for unknown token #%s dropped", event.token_id)
        self.store.append_transaction(
            TransactionRecord(
                type=TxType.OPTION_EXERCISED,
                token_id=event.token_id,
                timestamp=ts,
                transaction_hash=meta.transaction_hash,
                block_number=meta.block_number,
                exerciser=event.exerciser,
                payout=event.payout,
            )
        )

    def _apply_balance_transferred(self, event: BalanceTransferred) -> None:
        if is_mint_or_burn(event):
            self.stats["skipped_mint_burn"] += 1
            return
        meta = event.meta
        ts = self._timestamp(meta)
        self.store.adjust_balance(event.from_addr, event.token_id, -event.value)
        self.store.adjust_balance(event.to_addr, event.token_id, event.value)
        self.store.append_transaction(
            TransactionRecord(
                type=TxType.OPTION_TRANSFERRED,
                token_id=event.token_id,
                timestamp=ts,
                transaction_hash=meta.transaction_hash,
                block_number=meta.block_number,
                operator=event.operator,
                from_addr=event.from_addr,
                to_addr=event.to_addr,
                value=event.value,
            )
        )
        logger.debug(
            "option transferred: token #%s x%s %s -> %s",
            event.token_id,
            event.value,
            event.from_addr,
            event.to_addr,
        )


def parse_token_id(value: Union[int, str]) -> int:
    try:
        token_id = int(str(value).strip(), 10)
    except ValueError as e:
        raise ValueError(f"token id must be a non-negative integer: {value}") from e
    if token_id < 0:
        raise ValueError(f"token id must be a non-negative integer: {value}")
    return token_id


class QueryService:
    """Read-only views over a StateStore.

    Every method returns plain dicts/lists. Lookups that miss return None.
    Expiry is evaluated against ``clock()`` at call time.
    """

    def __init__(
        self,
        store: StateStore,
        decimals: int = 18,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.decimals = decimals
        self.clock = clock

    def _sorted(self, records: List[OptionRecord]) -> List[OptionRecord]:
        return sorted(records, key=lambda r: r.sort_key(), reverse=True)

    def _render(self, records: List[OptionRecord], now: float) -> List[Dict[str, Any]]:
        return [r.to_dict(now, self.decimals) for r in self._sorted(records)]

    def get_all(self) -> List[Dict[str, Any]]:
        return self._render(self.store.list_options(), self.clock())

    def get_available(self) -> List[Dict[str, Any]]:
        now = self.clock()
        return self._render([r for r in self.store.list_options() if r.is_active(now)], now)

    def get_by_id(self, token_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        record = self.store.get_option(parse_token_id(token_id))
        if record is None:
            return None
        return record.to_dict(self.clock(), self.decimals)

    def get_parents(self) -> List[Dict[str, Any]]:
        return self._render([r for r in self.store.list_options() if r.is_parent], self.clock())

    def _children(self, parent_id: int) -> List[OptionRecord]:
        return [
            r for r in self.store.list_options() if not r.is_parent and r.parent_id == parent_id
        ]

    def get_children(self, parent_id: Union[int, str]) -> List[Dict[str, Any]]:
        return self._render(self._children(parse_token_id(parent_id)), self.clock())

    def get_by_user(self, address: str) -> List[Dict[str, Any]]:
        owner = checksum_address(address)
        now = self.clock()
        held: List[Tuple[OptionRecord, int]] = []
        for token_id, balance in self.store.get_balances(owner).items():
            record = self.store.get_option(token_id)
            if record is not None and balance > 0:
                held.append((record, balance))
        held.sort(key=lambda x: x[0].sort_key(), reverse=True)
        out: List[Dict[str, Any]] = []
        for record, balance in held:
            item = record.to_dict(now, self.decimals)
            item["balance"] = balance
            out.append(item)
        return out

    def get_user_balances(self, address: str) -> Dict[int, int]:
        return self.store.get_balances(checksum_address(address))

    def get_hierarchy(self, parent_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        pid = parse_token_id(parent_id)
        parent = self.store.get_option(pid)
        if parent is None or not parent.is_parent:
            return None
        now = self.clock()
        children = self._sorted(self._children(pid))
        return {
            "parent": parent.to_dict(now, self.decimals),
            "children": [c.to_dict(now, self.decimals) for c in children],
            "totalChildren": len(children),
            "activeChildren": sum(1 for c in children if c.is_active(now)),
        }

    def get_capital_efficiency_stats(self) -> Dict[str, Any]:
        records = self.store.list_options()
        parents = [r for r in records if r.is_parent]
        traditional = sum(
            (raw_to_decimal(r.strike_price, self.decimals) for r in parents), Decimal(0)
        )
        layered = sum(
            (raw_to_decimal(r.premium, self.decimals) for r in records), Decimal(0)
        )
        savings = traditional - layered
        if traditional > 0:
            savings_pct = f"{decimal_to_str(savings / traditional * 100, 2)}%"
        else:
            savings_pct = "0%"
        return {
            "totalOptions": len(records),
            "parentOptions": len(parents),
            "childOptions": len(records) - len(parents),
            "totalTraditionalCollateral": decimal_to_str(traditional, 6),
            "totalLayeredCollateral": decimal_to_str(layered, 6),
            "totalSavings": decimal_to_str(savings, 6),
            "savingsPercentage": savings_pct,
        }

    def get_recent_transactions(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self.store.recent_transactions(int(limit))]


@dataclass
class AppConfig:
    http_rpc_url: str
    chain_id: int
    contract_addr: str
    token_decimals: int
    scan_interval_sec: int
    lookback_blocks: int
    scan_chunk_blocks: int
    confirmations: int
    max_rpc_retries: int
    rpc_timeout_sec: int
    recent_tx_limit: int
    api_host: str
    api_port: int
    cors_allow_origins: List[str]
    log_level: str
    log_file: Optional[str]


def _parse_cors_origins(raw: Any) -> List[str]:
    if isinstance(raw, str):
        return [x.strip().rstrip("/") for x in raw.split(",") if x and x.strip()]
    if isinstance(raw, list):
        return [str(x).strip().rstrip("/") for x in raw if str(x).strip()]
    return []


def config_from_dict(raw: Dict[str, Any]) -> AppConfig:
    http_rpc_url = str(raw.get("HTTP_RPC_URL", "")).strip()
    if not http_rpc_url:
        raise ValueError("HTTP_RPC_URL is required")
    contract_addr = normalize_address(str(raw.get("OPTIONS_CONTRACT_ADDR", DEFAULT_CONTRACT_ADDR)))

    token_decimals = int(raw.get("TOKEN_DECIMALS", 18))
    if token_decimals < 0 or token_decimals > 77:
        raise ValueError("TOKEN_DECIMALS must be in [0,77]")
    scan_interval_sec = int(raw.get("SCAN_INTERVAL_SEC", 30))
    if scan_interval_sec < 1:
        raise ValueError("SCAN_INTERVAL_SEC must be >= 1")
    lookback_blocks = int(raw.get("LOOKBACK_BLOCKS", 1000))
    if lookback_blocks < 0:
        raise ValueError("LOOKBACK_BLOCKS must be >= 0")
    scan_chunk_blocks = int(raw.get("SCAN_CHUNK_BLOCKS", 2000))
    if scan_chunk_blocks < 1:
        raise ValueError("SCAN_CHUNK_BLOCKS must be >= 1")
    confirmations = int(raw.get("CONFIRMATIONS", 0))
    if confirmations < 0:
        raise ValueError("CONFIRMATIONS must be >= 0")
    max_rpc_retries = int(raw.get("MAX_RPC_RETRIES", 5))
    if max_rpc_retries < 1:
        raise ValueError("MAX_RPC_RETRIES must be >= 1")

    log_level = str(raw.get("LOG_LEVEL", "info")).lower()
    if log_level not in {"debug", "info", "warning", "error", "critical"}:
        raise ValueError(f"LOG_LEVEL is invalid: {log_level}")
    log_file_raw = str(raw.get("LOG_FILE", "") or "").strip()

    return AppConfig(
        http_rpc_url=http_rpc_url,
        chain_id=int(raw.get("CHAIN_ID", 5115)),
        contract_addr=contract_addr,
        token_decimals=token_decimals,
        scan_interval_sec=scan_interval_sec,
        lookback_blocks=lookback_blocks,
        scan_chunk_blocks=scan_chunk_blocks,
        confirmations=confirmations,
        max_rpc_retries=max_rpc_retries,
        rpc_timeout_sec=int(raw.get("RPC_TIMEOUT_SEC", 12)),
        recent_tx_limit=int(raw.get("RECENT_TX_LIMIT", 50)),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=int(raw.get("API_PORT", 3001)),
        cors_allow_origins=_parse_cors_origins(raw.get("CORS_ALLOW_ORIGINS", [])),
        log_level=log_level,
        log_file=log_file_raw or None,
    )


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError("config root must be a JSON object")
    return config_from_dict(raw)


class RPCError(RuntimeError):
    """A JSON-RPC error object returned by the node."""

    def __init__(self, method: str, error: Any):
        self.method = method
        self.code = error.get("code") if isinstance(error, dict) else None
        message = error.get("message", error) if isinstance(error, dict) else error
        super().__init__(f"{method} returned error {self.code}: {message}")


class RPCClient:
    def __init__(
        self,
        url: str,
        max_retries: int = 5,
        timeout_sec: int = 12,
        retry_base_sec: float = 0.5,
    ):
        self.url = url
        self.max_retries = max(1, max_retries)
        self.retry_base_sec = retry_base_sec
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1
        self.stats: Dict[str, int] = {"requests": 0, "retries": 0, "failures": 0}

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        delay = self.retry_base_sec
        for attempt in range(1, self.max_retries + 1):
            self.stats["requests"] += 1
            try:
                async with self._session.post(self.url, json=payload) as resp:
                    resp.raise_for_status()
                    data = await resp.json(content_type=None)
                if data.get("error") is not None:
                    raise RPCError(method, data["error"])
                return data.get("result")
            except (aiohttp.ClientError, asyncio.TimeoutError, RPCError, ValueError) as e:
                if attempt >= self.max_retries:
                    self.stats["failures"] += 1
                    raise
                self.stats["retries"] += 1
                logger.debug(
                    "%s attempt %d/%d failed: %s; retrying in %.1fs",
                    method,
                    attempt,
                    self.max_retries,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2

    async def block_number(self) -> int:
        return parse_hex_int(await self.call("eth_blockNumber", []))

    async def block_by_hash(self, block_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getBlockByHash", [block_hash, False])

    async def logs(
        self, address: str, topic0: str, from_block: int, to_block: int
    ) -> List[Dict[str, Any]]:
        log_filter = {
            "address": address,
            "topics": [topic0],
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }
        return await self.call("eth_getLogs", [log_filter]) or []


class ChainClient:
    """The three chain reads the indexer depends on."""

    def __init__(self, rpc: RPCClient):
        self.rpc = rpc
        self.block_ts_cache: Dict[str, int] = {}

    async def current_height(self) -> int:
        return await self.rpc.block_number()

    async def get_logs(
        self, address: str, topic0: str, from_block: int, to_block: int
    ) -> List[Dict[str, Any]]:
        return await self.rpc.logs(address, topic0, from_block, to_block)

    async def get_block_timestamp(self, block_hash: str) -> int:
        cached = self.block_ts_cache.get(block_hash)
        if cached is not None:
            return cached
        block = await self.rpc.block_by_hash(block_hash)
        if not block:
            return int(time.time())
        ts = parse_hex_int(block["timestamp"])
        self.block_ts_cache[block_hash] = ts
        if len(self.block_ts_cache) > BLOCK_TS_CACHE_MAX:
            for h in list(self.block_ts_cache.keys())[:1000]:
                self.block_ts_cache.pop(h, None)
        return ts


class ScanState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"


class ScanScheduler:
    def __init__(
        self,
        chain: Any,
        processor: EventProcessor,
        contract_addr: str,
        interval_sec: float = 30,
        lookback_blocks: int = 1000,
        chunk_blocks: int = 2000,
        confirmations: int = 0,
        specs: Optional[List[EventSpec]] = None,
    ):
        self.chain = chain
        self.processor = processor
        self.contract_addr = contract_addr
        self.interval_sec = interval_sec
        self.lookback_blocks = lookback_blocks
        self.chunk_blocks = max(1, chunk_blocks)
        self.confirmations = confirmations
        self.specs = list(specs if specs is not None else EVENT_SPECS)
        self.state = ScanState.IDLE
        self.cursors: Dict[str, int] = {}
        self.stop_event = asyncio.Event()
        self._inflight: Optional[asyncio.Task] = None
        self.stats: Dict[str, Any] = {
            "ticks": 0,
            "skipped_ticks": 0,
            "failed_ticks": 0,
            "fetch_errors": 0,
            "decode_errors": 0,
            "timestamp_errors": 0,
            "last_height": 0,
            "last_tick_at": 0,
        }

    @property
    def last_processed_height(self) -> Optional[int]:
        if not self.cursors:
            return None
        return min(self.cursors.values())

    async def bootstrap(self) -> None:
        height = await self.chain.current_height()
        start = max(0, height - self.lookback_blocks)
        self.cursors = {spec.name: start for spec in self.specs}
        logger.info("starting index from block %d (head %d)", start, height)

    async def tick(self) -> bool:
        """Run one scan unless one is already in progress. Returns False when skipped."""
        if self.state is ScanState.SCANNING:
            self.stats["skipped_ticks"] += 1
            logger.debug("scan already in progress; tick skipped")
            return False
        self.state = ScanState.SCANNING
        try:
            if not self.cursors:
                await self.bootstrap()
            await self._scan_once()
        except Exception:
            self.stats["failed_ticks"] += 1
            logger.exception("scan tick aborted")
        finally:
            self.stats["ticks"] += 1
            self.stats["last_tick_at"] = int(time.time())
            self.state = ScanState.IDLE
        return True

    async def _scan_once(self) -> None:
        height = await self.chain.current_height()
        target = max(0, height - self.confirmations)
        self.stats["last_height"] = height

        # Each signature is held at or below the block reached by every signature
        # before it, so exercises and transfers never overtake their creations.
        frontier = target
        reached_by: Dict[str, int] = {}
        batch: List[ChainEvent] = []
        for spec in self.specs:
            cursor = self.cursors[spec.name]
            end = min(target, frontier)
            if cursor >= end:
                frontier = min(frontier, cursor)
                continue
            logs, reached = await self._fetch_window(spec, cursor + 1, end)
            events, failures = decode_logs(spec, logs)
            for raw, err in failures:
                self.stats["decode_errors"] += 1
                logger.warning(
                    "skipping malformed %s log in tx %s: %s",
                    spec.name,
                    raw.get("transactionHash") if isinstance(raw, dict) else None,
                    err,
                )
            reached = await self._resolve_timestamps(events, reached)
            batch.extend(e for e in events if e.meta.block_number <= reached)
            reached_by[spec.name] = reached
            frontier = min(frontier, reached)

        applied = self.processor.apply_batch(batch)
        self.cursors.update(reached_by)
        logger.info(
            "indexed to block %s (head %d): %d/%d events applied, %d options",
            self.last_processed_height,
            height,
            applied,
            len(batch),
            len(self.processor.store.options),
        )

    async def _fetch_window(
        self, spec: EventSpec, start: int, end: int
    ) -> Tuple[List[Dict[str, Any]], int]:
        logs: List[Dict[str, Any]] = []
        reached = start - 1
        chunk_start = start
        while chunk_start <= end:
            chunk_end = min(end, chunk_start + self.chunk_blocks - 1)
            try:
                chunk = await self.chain.get_logs(
                    self.contract_addr, spec.topic0, chunk_start, chunk_end
                )
            except Exception as e:
                self.stats["fetch_errors"] += 1
                logger.warning(
                    "fetching %s logs for blocks %d-%d failed: %s; will retry next tick",
                    spec.name,
                    chunk_start,
                    chunk_end,
                    e,
                )
                break
            logs.extend(chunk)
            reached = chunk_end
            chunk_start = chunk_end + 1
        return logs, reached

    async def _resolve_timestamps(self, events: List[ChainEvent], reached: int) -> int:
        """Fill in block timestamps. Returns the highest block whose events all resolved."""
        for event in events:
            meta = event.meta
            if meta.block_number > reached or is_mint_or_burn(event):
                continue
            try:
                meta.timestamp = await self.chain.get_block_timestamp(meta.block_hash)
            except Exception as e:
                self.stats["timestamp_errors"] += 1
                logger.warning(
                    "block %d timestamp unavailable (%s in tx %s): %s; will retry next tick",
                    meta.block_number,
                    type(event).__name__,
                    meta.transaction_hash,
                    e,
                )
                reached = meta.block_number - 1
        return reached

    async def run(self) -> None:
        while not self.stop_event.is_set():
            if self._inflight is None or self._inflight.done():
                self._inflight = asyncio.create_task(self.tick())
            else:
                self.stats["skipped_ticks"] += 1
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.interval_sec)

    async def stop(self) -> None:
        self.stop_event.set()
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._inflight
        self.state = ScanState.IDLE


class IndexerService:
    def __init__(self, cfg: AppConfig, chain: Optional[Any] = None):
        self.cfg = cfg
        self.cors_allow_origins = {
            str(x).strip().rstrip("/") for x in cfg.cors_allow_origins if str(x).strip()
        }
        self.rpc: Optional[RPCClient] = None
        if chain is None:
            self.rpc = RPCClient(
                cfg.http_rpc_url,
                max_retries=cfg.max_rpc_retries,
                timeout_sec=cfg.rpc_timeout_sec,
            )
            chain = ChainClient(self.rpc)
        self.chain = chain
        self.store = StateStore()
        self.processor = EventProcessor(self.store)
        self.scheduler = ScanScheduler(
            chain=self.chain,
            processor=self.processor,
            contract_addr=cfg.contract_addr,
            interval_sec=cfg.scan_interval_sec,
            lookback_blocks=cfg.lookback_blocks,
            chunk_blocks=cfg.scan_chunk_blocks,
            confirmations=cfg.confirmations,
        )
        self.queries = QueryService(self.store, decimals=cfg.token_decimals)
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []
        self.started_at = int(time.time())

    async def __aenter__(self) -> "IndexerService":
        if self.rpc is not None:
            await self.rpc.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.stop_event.is_set():
            await self.shutdown()
        if self.rpc is not None:
            await self.rpc.__aexit__(exc_type, exc, tb)

    def _list_response(self, items: List[Any]) -> web.Response:
        return web.json_response({"count": len(items), "items": items})

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "ok": True,
                "state": self.scheduler.state.value,
                "lastProcessedBlock": self.scheduler.last_processed_height,
                "cursors": dict(self.scheduler.cursors),
                "scanner": dict(self.scheduler.stats),
                "processor": dict(self.processor.stats),
                "store": self.store.counts(),
                "rpc": dict(self.rpc.stats) if self.rpc is not None else None,
                "contract": self.cfg.contract_addr,
                "chainId": self.cfg.chain_id,
                "startedAt": self.started_at,
            }
        )

    async def scan_handler(self, request: web.Request) -> web.Response:
        ran = await self.scheduler.tick()
        return web.json_response(
            {
                "ok": True,
                "scanned": ran,
                "lastProcessedBlock": self.scheduler.last_processed_height,
            }
        )

    async def options_handler(self, request: web.Request) -> web.Response:
        return self._list_response(self.queries.get_all())

    async def available_handler(self, request: web.Request) -> web.Response:
        return self._list_response(self.queries.get_available())

    async def parents_handler(self, request: web.Request) -> web.Response:
        return self._list_response(self.queries.get_parents())

    async def children_handler(self, request: web.Request) -> web.Response:
        try:
            items = self.queries.get_children(request.match_info["parent_id"])
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        return self._list_response(items)

    async def user_options_handler(self, request: web.Request) -> web.Response:
        try:
            items = self.queries.get_by_user(request.match_info["address"])
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        return self._list_response(items)

    async def user_balances_handler(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        try:
            balances = self.queries.get_user_balances(address)
            owner = checksum_address(address)
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        return web.json_response(
            {"address": owner, "balances": {str(k): v for k, v in balances.items()}}
        )

    async def efficiency_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.queries.get_capital_efficiency_stats())

    async def recent_transactions_handler(self, request: web.Request) -> web.Response:
        try:
            limit_n = int(request.query.get("limit", str(self.cfg.recent_tx_limit)))
        except ValueError:
            return web.json_response({"error": "limit must be integer"}, status=400)
        limit_n = max(1, min(limit_n, 500))
        return self._list_response(self.queries.get_recent_transactions(limit_n))

    async def hierarchy_handler(self, request: web.Request) -> web.Response:
        try:
            data = self.queries.get_hierarchy(request.match_info["token_id"])
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        if data is None:
            return web.json_response({"error": "parent option not found"}, status=404)
        return web.json_response(data)

    async def option_detail_handler(self, request: web.Request) -> web.Response:
        try:
            data = self.queries.get_by_id(request.match_info["token_id"])
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        if data is None:
            return web.json_response({"error": "layered option not found"}, status=404)
        return web.json_response(data)

    def resolve_cors_origin(self, request_origin: Optional[str]) -> Optional[str]:
        if not request_origin or not self.cors_allow_origins:
            return None
        origin = str(request_origin).strip().rstrip("/")
        if not origin:
            return None
        if "*" in self.cors_allow_origins:
            return "*"
        if origin in self.cors_allow_origins:
            return origin
        return None

    async def create_api_app(self) -> web.Application:
        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            allow_origin = self.resolve_cors_origin(request.headers.get("Origin"))
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as ex:
                    response = ex

            if allow_origin:
                response.headers["Access-Control-Allow-Origin"] = allow_origin
                response.headers["Vary"] = "Origin"
                response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization"
                response.headers["Access-Control-Max-Age"] = "86400"
            return response

        middlewares = [cors_middleware] if self.cors_allow_origins else []
        app = web.Application(middlewares=middlewares)
        prefix = "/api/layered-options"
        app.router.add_get("/health", self.health_handler)
        app.router.add_post("/scan", self.scan_handler)
        app.router.add_get(prefix, self.options_handler)
        app.router.add_get(f"{prefix}/available", self.available_handler)
        app.router.add_get(f"{prefix}/parents", self.parents_handler)
        app.router.add_get(f"{prefix}/parent/{{parent_id}}/children", self.children_handler)
        app.router.add_get(f"{prefix}/user/{{address}}", self.user_options_handler)
        app.router.add_get(f"{prefix}/user/{{address}}/balances", self.user_balances_handler)
        app.router.add_get(f"{prefix}/stats/efficiency", self.efficiency_handler)
        app.router.add_get(f"{prefix}/transactions/recent", self.recent_transactions_handler)
        app.router.add_get(f"{prefix}/{{token_id}}/hierarchy", self.hierarchy_handler)
        app.router.add_get(f"{prefix}/{{token_id}}", self.option_detail_handler)
        return app

    async def run(self) -> None:
        self.tasks.append(asyncio.create_task(self.scheduler.run()))

        app = await self.create_api_app()
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
        await site.start()
        logger.info(
            "layered options indexer listening on http://%s:%d, contract %s",
            self.cfg.api_host,
            self.cfg.api_port,
            self.cfg.contract_addr,
        )

        try:
            while not self.stop_event.is_set():
                await asyncio.sleep(1)
        finally:
            await runner.cleanup()

    async def shutdown(self) -> None:
        self.stop_event.set()
        await self.scheduler.stop()
        for t in self.tasks:
            t.cancel()
        for t in self.tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        logger.info("layered options indexer stopped")


async def main_async(cfg: AppConfig) -> None:
    async with IndexerService(cfg) as service:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(service.run())
        wait_task = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for p in pending:
            p.cancel()
        for d in done:
            if d is run_task and d.exception():
                raise d.exception()
        await service.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Layered options indexer: rebuilds option state from contract events"
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warning", "error", "critical"],
        help="override LOG_LEVEL from the config file",
    )
    args = parser.parse_args()

    try:
        cfg = load_config(args.config)
    except (OSError, ValueError) as e:
        raise SystemExit(f"invalid config {args.config}: {e}") from e
    if args.log_level:
        cfg.log_level = args.log_level
    setup_logging(cfg.log_level, cfg.log_file)

    try:
        asyncio.run(main_async(cfg))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
