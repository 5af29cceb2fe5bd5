"""Knight roster — display metadata and domain routing for the fleet."""
from dataclasses import dataclass


@dataclass(frozen=True)
class KnightConfig:
    name: str
    domain: str
    title: str
    emoji: str
    color: str


KNIGHTS: dict[str, KnightConfig] = {
    k.name: k
    for k in (
        KnightConfig("galahad", "security", "Security", "🛡️", "#f87171"),
        KnightConfig("kay", "research", "Research", "📡", "#60a5fa"),
        KnightConfig("tristan", "infrastructure", "Infrastructure", "🏗️", "#22d3ee"),
        KnightConfig("gawain", "orchestrator", "Orchestrator", "☀️", "#facc15"),
        KnightConfig("agravain", "pentest", "Pentest", "🗡️", "#fb923c"),
        KnightConfig("bedivere", "home", "Home", "🏠", "#4ade80"),
        KnightConfig("percival", "finance", "Finance", "📋", "#a78bfa"),
        KnightConfig("patsy", "vault", "Vault", "🥥", "#fbbf24"),
        KnightConfig("gareth", "wellness", "Wellness", "🌿", "#34d399"),
        KnightConfig("lancelot", "career", "Career", "⚔️", "#818cf8"),
    )
}

KNIGHT_NAMES: list[str] = list(KNIGHTS)

# Senders that are not knights; traffic from them is drawn from the hub.
HUB = "tim"
HUB_SENDERS = frozenset({"ui", "dashboard", "dashboard-ws", "tim", "cron"})

_BY_DOMAIN = {k.domain: k.name for k in KNIGHTS.values()}


def get_knight_config(name: str) -> KnightConfig:
    return KNIGHTS.get(name) or KnightConfig(name, name, name, "🤖", "#9ca3af")


def knight_for_domain(domain: str) -> str | None:
    """Resolve a subject domain (or a bare knight name) to a knight."""
    if not domain:
        return None
    key = domain.lower()
    if key in _BY_DOMAIN:
        return _BY_DOMAIN[key]
    if key in KNIGHTS:
        return key
    return None
