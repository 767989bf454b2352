import copy
import json
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import redis
from loguru import logger

from graph.state import parse_iso
from tools import config
from tools.errors import DuplicateLeadError, StoreError

LeadMutator = Callable[[Dict[str, Any]], Dict[str, Any]]


def new_id() -> str:
    return str(uuid.uuid4())


def identity_key(email: str) -> str:
    """Leads are keyed by their lower-cased, trimmed email."""
    return (email or "").strip().lower()


class LeadStore:
    """Data-access interface for leads, activities, webhook events, performance logs and alerts.

    Every method returns detached copies: mutating a returned record never
    changes what is stored. Read-modify-write on a lead or event goes through
    ``update_lead`` / ``claim_event`` so concurrent submissions cannot lose updates.
    """

    # Leads
    def get_lead(self, email: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def insert_lead(self, lead: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def update_lead(self, email: str, mutator: LeadMutator) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def count_leads(self) -> int:
        raise NotImplementedError

    # Activities
    def add_activity(self, activity: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def list_activities(self, lead_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    # Webhook events
    def add_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def update_event(self, event_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def claim_event(
        self,
        event_id: str,
        expected_status: str,
        changes: Dict[str, Any],
        expected_updated_at: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Apply ``changes`` only if the event is still in ``expected_status``.

        With ``expected_updated_at`` the event must also be unchanged since it was
        read, which lets a stale RETRYING claim be taken over by exactly one sweep.
        """
        raise NotImplementedError

    def list_events(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    # Performance logs
    def add_performance_log(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def list_performance_logs(self, start: datetime, end: datetime, platform: Optional[str] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    # Alerts
    def add_alert(self, alert: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def get_alert(self, alert_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def update_alert(self, alert_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def list_alerts(self, resolved: Optional[bool] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def find_open_alert(self, alert_type: str, platform: Optional[str]) -> Optional[Dict[str, Any]]:
        for alert in self.list_alerts(resolved=False):
            if alert.get("type") == alert_type and alert.get("platform") == platform:
                return alert
        return None


def _claimable(event: Dict[str, Any], expected_status: str, expected_updated_at: Optional[str]) -> bool:
    if event.get("status") != expected_status:
        return False
    return expected_updated_at is None or event.get("updated_at") == expected_updated_at


def _in_range(entry: Dict[str, Any], start: datetime, end: datetime, platform: Optional[str]) -> bool:
    ts = parse_iso(entry.get("timestamp"))
    if ts is None or ts < start or ts > end:
        return False
    return platform is None or entry.get("platform") == platform


class MemoryStore(LeadStore):
    """In-process store. A single re-entrant lock makes every operation atomic."""

    def __init__(self):
        self._lock = threading.RLock()
        self._leads: Dict[str, Dict[str, Any]] = {}
        self._activities: Dict[str, List[Dict[str, Any]]] = {}
        self._events: Dict[str, Dict[str, Any]] = {}
        self._performance_logs: List[Dict[str, Any]] = []
        self._alerts: Dict[str, Dict[str, Any]] = {}

    def get_lead(self, email: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            lead = self._leads.get(identity_key(email))
            return copy.deepcopy(lead) if lead else None

    def insert_lead(self, lead: Dict[str, Any]) -> Dict[str, Any]:
        key = identity_key(lead.get("email", ""))
        with self._lock:
            if key in self._leads:
                raise DuplicateLeadError(key)
            stored = copy.deepcopy(lead)
            stored["email"] = key
            stored.setdefault("id", new_id())
            self._leads[key] = stored
            return copy.deepcopy(stored)

    def update_lead(self, email: str, mutator: LeadMutator) -> Optional[Dict[str, Any]]:
        key = identity_key(email)
        with self._lock:
            current = self._leads.get(key)
            if current is None:
                return None
            updated = mutator(copy.deepcopy(current))
            self._leads[key] = updated
            return copy.deepcopy(updated)

    def count_leads(self) -> int:
        with self._lock:
            return len(self._leads)

    def add_activity(self, activity: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            stored = copy.deepcopy(activity)
            stored.setdefault("id", new_id())
            self._activities.setdefault(stored["lead_id"], []).append(stored)
            return copy.deepcopy(stored)

    def list_activities(self, lead_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._activities.get(lead_id, []))

    def add_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            stored = copy.deepcopy(event)
            stored.setdefault("id", new_id())
            self._events[stored["id"]] = stored
            return copy.deepcopy(stored)

    def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            event = self._events.get(event_id)
            return copy.deepcopy(event) if event else None

    def update_event(self, event_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            event = self._events.get(event_id)
            if event is None:
                return None
            event.update(copy.deepcopy(changes))
            return copy.deepcopy(event)

    def claim_event(
        self,
        event_id: str,
        expected_status: str,
        changes: Dict[str, Any],
        expected_updated_at: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            event = self._events.get(event_id)
            if event is None or not _claimable(event, expected_status, expected_updated_at):
                return None
            event.update(copy.deepcopy(changes))
            return copy.deepcopy(event)

    def list_events(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            events = [e for e in self._events.values() if status is None or e.get("status") == status]
            return copy.deepcopy(events)

    def add_performance_log(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            stored = copy.deepcopy(entry)
            stored.setdefault("id", new_id())
            self._performance_logs.append(stored)
            return copy.deepcopy(stored)

    def list_performance_logs(self, start: datetime, end: datetime, platform: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            logs = [e for e in self._performance_logs if _in_range(e, start, end, platform)]
            return copy.deepcopy(logs)

    def add_alert(self, alert: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            stored = copy.deepcopy(alert)
            stored.setdefault("id", new_id())
            self._alerts[stored["id"]] = stored
            return copy.deepcopy(stored)

    def get_alert(self, alert_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return copy.deepcopy(alert) if alert else None

    def update_alert(self, alert_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return None
            alert.update(copy.deepcopy(changes))
            return copy.deepcopy(alert)

    def list_alerts(self, resolved: Optional[bool] = None) -> List[Dict[str, Any]]:
        with self._lock:
            alerts = [a for a in self._alerts.values() if resolved is None or bool(a.get("resolved")) == resolved]
            return copy.deepcopy(alerts)


class RedisStore(LeadStore):
    """Redis-backed store.

    Leads live under ``lw:lead:<email>``. Inserts use ``SET NX`` so only one of two
    racing first submissions wins; merges and event claims use WATCH/MULTI
    optimistic transactions and retry on conflict.
    """

    PREFIX = "lw"
    MAX_TRANSACTION_RETRIES = 10

    def __init__(self, client: "redis.Redis"):
        self.r = client

    def _key(self, *parts: str) -> str:
        return ":".join((self.PREFIX,) + parts)

    @staticmethod
    def _dump(record: Dict[str, Any]) -> str:
        return json.dumps(record, default=str)

    @staticmethod
    def _load(raw: Optional[str]) -> Optional[Dict[str, Any]]:
        return json.loads(raw) if raw else None

    def _transact(self, key: str, mutator: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
        """Optimistic read-modify-write of one JSON key. A mutator returning None aborts."""
        try:
            with self.r.pipeline() as pipe:
                for _ in range(self.MAX_TRANSACTION_RETRIES):
                    try:
                        pipe.watch(key)
                        current = self._load(pipe.get(key))
                        if current is None:
                            pipe.unwatch()
                            return None
                        updated = mutator(current)
                        if updated is None:
                            pipe.unwatch()
                            return None
                        pipe.multi()
                        pipe.set(key, self._dump(updated))
                        pipe.execute()
                        return updated
                    except redis.WatchError:
                        logger.debug(f"Concurrent update on {key}, retrying")
                        continue
        except redis.RedisError as e:
            raise StoreError(f"Redis transaction failed for {key}: {e}") from e
        raise StoreError(f"Gave up updating {key} after {self.MAX_TRANSACTION_RETRIES} conflicts")

    def get_lead(self, email: str) -> Optional[Dict[str, Any]]:
        try:
            return self._load(self.r.get(self._key("lead", identity_key(email))))
        except redis.RedisError as e:
            raise StoreError(f"Lead lookup failed: {e}") from e

    def insert_lead(self, lead: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(lead)
        stored["email"] = identity_key(lead.get("email", ""))
        stored.setdefault("id", new_id())
        try:
            created = self.r.set(self._key("lead", stored["email"]), self._dump(stored), nx=True)
            if not created:
                raise DuplicateLeadError(stored["email"])
            self.r.hset(self._key("lead_ids"), stored["id"], stored["email"])
        except redis.RedisError as e:
            raise StoreError(f"Lead insert failed: {e}") from e
        return stored

    def update_lead(self, email: str, mutator: LeadMutator) -> Optional[Dict[str, Any]]:
        return self._transact(self._key("lead", identity_key(email)), mutator)

    def count_leads(self) -> int:
        try:
            return int(self.r.hlen(self._key("lead_ids")))
        except redis.RedisError as e:
            raise StoreError(f"Lead count failed: {e}") from e

    def add_activity(self, activity: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(activity)
        stored.setdefault("id", new_id())
        try:
            self.r.rpush(self._key("activities", stored["lead_id"]), self._dump(stored))
        except redis.RedisError as e:
            raise StoreError(f"Activity insert failed: {e}") from e
        return stored

    def list_activities(self, lead_id: str) -> List[Dict[str, Any]]:
        try:
            return [json.loads(raw) for raw in self.r.lrange(self._key("activities", lead_id), 0, -1)]
        except redis.RedisError as e:
            raise StoreError(f"Activity lookup failed: {e}") from e

    def add_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(event)
        stored.setdefault("id", new_id())
        created = parse_iso(stored.get("created_at"))
        try:
            pipe = self.r.pipeline(transaction=True)
            pipe.set(self._key("event", stored["id"]), self._dump(stored))
            pipe.zadd(self._key("events"), {stored["id"]: created.timestamp() if created else 0})
            pipe.execute()
        except redis.RedisError as e:
            raise StoreError(f"Event insert failed: {e}") from e
        return stored

    def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._load(self.r.get(self._key("event", event_id)))
        except redis.RedisError as e:
            raise StoreError(f"Event lookup failed: {e}") from e

    def update_event(self, event_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        def apply(event):
            event.update(changes)
            return event
        return self._transact(self._key("event", event_id), apply)

    def claim_event(
        self,
        event_id: str,
        expected_status: str,
        changes: Dict[str, Any],
        expected_updated_at: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        def apply(event):
            if not _claimable(event, expected_status, expected_updated_at):
                return None
            event.update(changes)
            return event
        return self._transact(self._key("event", event_id), apply)

    def list_events(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        try:
            ids = self.r.zrange(self._key("events"), 0, -1)
            if not ids:
                return []
            raws = self.r.mget([self._key("event", i) for i in ids])
        except redis.RedisError as e:
            raise StoreError(f"Event listing failed: {e}") from e
        events = [json.loads(raw) for raw in raws if raw]
        return [e for e in events if status is None or e.get("status") == status]

    def add_performance_log(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(entry)
        stored.setdefault("id", new_id())
        ts = parse_iso(stored.get("timestamp"))
        try:
            self.r.zadd(self._key("performance"), {self._dump(stored): ts.timestamp() if ts else 0})
        except redis.RedisError as e:
            raise StoreError(f"Performance log insert failed: {e}") from e
        return stored

    def list_performance_logs(self, start: datetime, end: datetime, platform: Optional[str] = None) -> List[Dict[str, Any]]:
        try:
            raws = self.r.zrangebyscore(self._key("performance"), start.timestamp(), end.timestamp())
        except redis.RedisError as e:
            raise StoreError(f"Performance log lookup failed: {e}") from e
        logs = [json.loads(raw) for raw in raws]
        return [e for e in logs if platform is None or e.get("platform") == platform]

    def add_alert(self, alert: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(alert)
        stored.setdefault("id", new_id())
        try:
            self.r.set(self._key("alert", stored["id"]), self._dump(stored))
            self.r.sadd(self._key("alerts"), stored["id"])
        except redis.RedisError as e:
            raise StoreError(f"Alert insert failed: {e}") from e
        return stored

    def get_alert(self, alert_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._load(self.r.get(self._key("alert", alert_id)))
        except redis.RedisError as e:
            raise StoreError(f"Alert lookup failed: {e}") from e

    def update_alert(self, alert_id: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        def apply(alert):
            alert.update(changes)
            return alert
        return self._transact(self._key("alert", alert_id), apply)

    def list_alerts(self, resolved: Optional[bool] = None) -> List[Dict[str, Any]]:
        try:
            ids = sorted(self.r.smembers(self._key("alerts")))
            if not ids:
                return []
            raws = self.r.mget([self._key("alert", i) for i in ids])
        except redis.RedisError as e:
            raise StoreError(f"Alert listing failed: {e}") from e
        alerts = [json.loads(raw) for raw in raws if raw]
        return [a for a in alerts if resolved is None or bool(a.get("resolved")) == resolved]


_store: Optional[LeadStore] = None
_store_lock = threading.Lock()


def build_store() -> LeadStore:
    """Connect to Redis, falling back to the in-memory store if it is unreachable."""
    if config.store_backend() == "memory":
        logger.info("Using in-memory lead store")
        return MemoryStore()

    try:
        client = redis.from_url(config.redis_url(), decode_responses=True)
        client.ping()
        logger.info("Redis lead store connection established successfully")
        return RedisStore(client)
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        # Not shared across processes; counts and merges are per worker
        logger.warning("Falling back to in-memory lead store")
        return MemoryStore()


def get_store() -> LeadStore:
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                _store = build_store()
    return _store


def set_store(store: Optional[LeadStore]) -> None:
    """Install a store (tests, alternate backends). ``None`` resets to lazy construction."""
    global _store
    with _store_lock:
        _store = store
