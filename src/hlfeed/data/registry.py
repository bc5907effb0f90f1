"""In-memory registry of channel subscriptions and their callbacks."""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from hlfeed.errors import InvalidChannelError

from .channels import canonical_identifier, subscription_rule

MessageCallback = Callable[[Any], None]


@dataclass(frozen=True)
class CallbackEntry:
    """One registration of a callback against an identifier."""

    handle: int
    callback: MessageCallback


@dataclass(frozen=True)
class SubscriptionRecord:
    """What a handle was registered with."""

    subscription: Mapping[str, Any]
    identifier: str
    subscription_type: str


class SubscriptionRegistry:
    """Maps identifiers to callback entries and handles back to their records.

    All mutations and snapshot reads hold ``lock``. The lock can be shared with
    the owner so pending-subscription bookkeeping stays atomic with registry
    changes. The registry never performs I/O.
    """

    def __init__(self, lock: Optional[threading.RLock] = None) -> None:
        self.lock = lock or threading.RLock()
        self._callbacks: Dict[str, List[CallbackEntry]] = {}
        self._records: Dict[int, SubscriptionRecord] = {}
        self._handles = itertools.count()

    def register(self, subscription: Mapping[str, Any], callback: MessageCallback) -> int:
        """Register ``callback`` for ``subscription`` and return its handle.

        Raises:
            InvalidChannelError: the subscription is invalid, or its type is
                exclusive and another identifier of that type is active.
        """

        rule = subscription_rule(subscription)
        identifier = canonical_identifier(rule, subscription)
        with self.lock:
            if rule.exclusive:
                active = self.identifier_for_type(rule.subscription_type)
                if active is not None and active != identifier:
                    raise InvalidChannelError(
                        f"Only one {rule.subscription_type} subscription can be active (already {active})",
                        subscription,
                    )
            handle = next(self._handles)
            self._callbacks.setdefault(identifier, []).append(CallbackEntry(handle, callback))
            self._records[handle] = SubscriptionRecord(dict(subscription), identifier, rule.subscription_type)
        return handle

    def unregister(self, handle: int) -> Optional[Mapping[str, Any]]:
        """Remove a handle.

        Returns the subscription when the handle was the last one for its
        identifier, meaning the channel should be unsubscribed on the wire.
        Unknown handles are ignored.
        """

        with self.lock:
            record = self._records.pop(handle, None)
            if record is None:
                return None
            entries = self._callbacks.get(record.identifier, [])
            remaining = [entry for entry in entries if entry.handle != handle]
            if remaining:
                self._callbacks[record.identifier] = remaining
                return None
            self._callbacks.pop(record.identifier, None)
            return record.subscription

    def callbacks_for(self, identifier: str) -> List[MessageCallback]:
        """Snapshot the callbacks for ``identifier`` in registration order."""

        with self.lock:
            return [entry.callback for entry in self._callbacks.get(identifier, ())]

    def all_active_specs(self) -> List[Mapping[str, Any]]:
        """Return one subscription per active identifier, for replay."""

        with self.lock:
            specs: Dict[str, Mapping[str, Any]] = {}
            for handle in sorted(self._records):
                record = self._records[handle]
                specs.setdefault(record.identifier, record.subscription)
            return list(specs.values())

    def identifier_for(self, handle: int) -> Optional[str]:
        with self.lock:
            record = self._records.get(handle)
            return record.identifier if record else None

    def identifier_for_type(self, subscription_type: str) -> Optional[str]:
        """Return the first active identifier registered under ``subscription_type``."""

        with self.lock:
            for handle in sorted(self._records):
                record = self._records[handle]
                if record.subscription_type == subscription_type:
                    return record.identifier
            return None

    def subscriber_count(self, identifier: str) -> int:
        with self.lock:
            return len(self._callbacks.get(identifier, ()))

    def identifiers(self) -> Dict[str, int]:
        """Return active identifiers with their subscriber counts."""

        with self.lock:
            return {identifier: len(entries) for identifier, entries in self._callbacks.items()}

    def __len__(self) -> int:
        with self.lock:
            return len(self._records)


__all__ = ["SubscriptionRegistry", "CallbackEntry", "SubscriptionRecord", "MessageCallback"]
