"""Channel rules mapping subscriptions and inbound frames to canonical identifiers.

Both the registration path and the inbound message path resolve identifiers
through :func:`canonical_identifier`, so a subscription and the frames it
produces always meet under the same registry key.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from hlfeed.errors import InvalidChannelError

ParamExtractor = Callable[[Any], Dict[str, Any]]


@dataclass(frozen=True)
class ChannelRule:
    """Describes how one subscription type is keyed.

    Attributes:
        subscription_type: The ``type`` tag callers put in a subscription.
        params: Subscription keys embedded in the identifier, in order.
        inbound_channels: ``channel`` tags of inbound frames routed to this rule.
        extract: Reads the identifier params back out of an inbound ``data`` payload.
        exclusive: Inbound frames do not carry the params, so only one
            identifier of this type may be active and frames route to it.
    """

    subscription_type: str
    params: Tuple[str, ...]
    inbound_channels: Tuple[str, ...]
    extract: ParamExtractor
    exclusive: bool = False


def _no_params(data: Any) -> Dict[str, Any]:
    return {}


def _coin(data: Any) -> Dict[str, Any]:
    return {"coin": data["coin"]}


def _first_trade_coin(data: Any) -> Dict[str, Any]:
    return {"coin": data[0]["coin"]}


def _candle(data: Any) -> Dict[str, Any]:
    return {"coin": data["s"], "interval": data["i"]}


def _user(data: Any) -> Dict[str, Any]:
    return {"user": data["user"]}


RULES: Tuple[ChannelRule, ...] = (
    ChannelRule("allMids", (), ("allMids",), _no_params),
    ChannelRule("l2Book", ("coin",), ("l2Book",), _coin),
    ChannelRule("trades", ("coin",), ("trades",), _first_trade_coin),
    ChannelRule("bbo", ("coin",), ("bbo",), _coin),
    ChannelRule("candle", ("coin", "interval"), ("candle",), _candle),
    ChannelRule("activeAssetCtx", ("coin",), ("activeAssetCtx", "activeSpotAssetCtx"), _coin),
    ChannelRule("userEvents", ("user",), ("user",), _no_params, exclusive=True),
    ChannelRule("orderUpdates", ("user",), ("orderUpdates",), _no_params, exclusive=True),
    ChannelRule("userFills", ("user",), ("userFills",), _user),
    ChannelRule("userFundings", ("user",), ("userFundings",), _user),
    ChannelRule("userNonFundingLedgerUpdates", ("user",), ("userNonFundingLedgerUpdates",), _user),
    ChannelRule("webData2", ("user",), ("webData2",), _user),
)

_BY_TYPE: Dict[str, ChannelRule] = {rule.subscription_type: rule for rule in RULES}
_BY_CHANNEL: Dict[str, ChannelRule] = {
    channel: rule for rule in RULES for channel in rule.inbound_channels
}

# Case-insensitive parameters; anything else (e.g. candle intervals) is kept verbatim.
_LOWERCASE_PARAMS = frozenset({"coin", "user"})


def _normalize(key: str, value: Any) -> str:
    text = str(value)
    return text.lower() if key in _LOWERCASE_PARAMS else text


def canonical_identifier(rule: ChannelRule, params: Mapping[str, Any]) -> str:
    """Return the registry key for ``rule`` given its identifier params."""

    parts = [rule.subscription_type]
    parts.extend(_normalize(key, params[key]) for key in rule.params)
    return ":".join(parts)


def subscription_rule(subscription: Mapping[str, Any]) -> ChannelRule:
    """Return the rule for a caller-supplied subscription, validating it.

    Raises:
        InvalidChannelError: the subscription has no ``type``, an unsupported
            ``type``, or lacks a parameter the identifier needs.
    """

    if not isinstance(subscription, Mapping):
        raise InvalidChannelError(f"Subscription must be a mapping, got {type(subscription).__name__}", subscription)

    sub_type = subscription.get("type")
    rule = _BY_TYPE.get(sub_type) if isinstance(sub_type, str) else None
    if rule is None:
        raise InvalidChannelError(f"Unsupported subscription type: {sub_type}", subscription)

    missing = [key for key in rule.params if subscription.get(key) in (None, "")]
    if missing:
        raise InvalidChannelError(
            f"Subscription type {sub_type} requires {', '.join(missing)}", subscription
        )
    return rule


def subscription_identifier(subscription: Mapping[str, Any]) -> str:
    """Return the identifier for a caller-supplied subscription.

    Raises:
        InvalidChannelError: see :func:`subscription_rule`.
    """

    return canonical_identifier(subscription_rule(subscription), subscription)


def message_identifier(channel: Optional[str], data: Any) -> Optional[str]:
    """Return the identifier an inbound frame routes to, or ``None`` if unroutable.

    Frames of exclusive channels carry no routing params and always yield
    ``None`` here; see :func:`exclusive_type`.
    """

    rule = _BY_CHANNEL.get(channel) if isinstance(channel, str) else None
    if rule is None:
        return None
    try:
        params = rule.extract(data)
    except (KeyError, IndexError, TypeError):
        return None
    if any(params.get(key) in (None, "") for key in rule.params):
        return None
    return canonical_identifier(rule, params)


def exclusive_type(channel: Optional[str]) -> Optional[str]:
    """Subscription type whose single active identifier receives ``channel`` frames."""

    rule = _BY_CHANNEL.get(channel) if isinstance(channel, str) else None
    if rule is None or not rule.exclusive:
        return None
    return rule.subscription_type


def supported_types() -> Tuple[str, ...]:
    """Return every subscription type with an identifier rule."""

    return tuple(_BY_TYPE)


__all__ = [
    "ChannelRule",
    "RULES",
    "canonical_identifier",
    "subscription_rule",
    "subscription_identifier",
    "message_identifier",
    "exclusive_type",
    "supported_types",
]
