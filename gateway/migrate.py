"""
Moorage - Config Migration & Repair
======================================
Normalizes the gateway config document before every launch.

Two independent passes, both safe to run any number of times:

1. migrate_config() - structural renames from the legacy layout:
       agent.model (string)     -> agents.defaults.model.primary
       agent.model (object)     -> merged into agents.defaults.model
       agent.modelFallbacks     -> agents.defaults.model.fallbacks
       agent.imageModel         -> agents.defaults.imageModel
       agent.tools.allow/deny   -> tools.allow / tools.deny
       agent.elevated           -> tools.elevated
       agent.bash               -> tools.exec
       agent.sandbox.tools      -> tools.sandbox.tools
       agent.subagents.tools    -> tools.subagents.tools
       remaining agent.*        -> agents.defaults.*
       gateway.token            -> gateway.auth {mode: token}

2. repair_config() - cross-field fixes: every channel with
   dmPolicy "open" must list the "*" wildcard in allowFrom.

The legacy `agent` block is parsed into `LegacyAgentSection` first, so the
set of recognized keys lives in one place and everything else falls into
`model_extra` for the final sweep.

Usage:
    doc = store.load()
    migrated, changes = migrate_config(doc)   # mutates doc in place
    repair_config(doc)
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_GATEWAY_PORT = 18789
DEFAULT_MODEL = "anthropic/claude-sonnet-4"
WILDCARD = "*"


class LegacyAgentSection(BaseModel):
    """
    Typed view of the legacy top-level `agent` block.

    Every field defaults to None; whether a key was actually present is
    answered by `given()`, because an explicit null still has to move.
    Unrecognized keys are kept in `model_extra` in their original order.
    """

    model_config = ConfigDict(extra="allow", protected_namespaces=())

    model: Any = None
    model_fallbacks: Any = Field(default=None, alias="modelFallbacks")
    image_model: Any = Field(default=None, alias="imageModel")
    tools: Any = None
    elevated: Any = None
    bash: Any = None
    sandbox: Any = None
    subagents: Any = None

    def given(self, field: str) -> bool:
        """Return True if `field` was present in the source block."""
        return field in self.model_fields_set


def default_config(port: int | str | None = None) -> dict[str, Any]:
    """
    Minimal valid document for a fresh install.

    Args:
        port: Gateway port; anything that does not parse as an integer
              falls back to DEFAULT_GATEWAY_PORT.
    """
    try:
        gateway_port = int(port) if port is not None else DEFAULT_GATEWAY_PORT
    except (TypeError, ValueError):
        gateway_port = DEFAULT_GATEWAY_PORT

    return {
        "agents": {
            "defaults": {
                "model": {"primary": DEFAULT_MODEL},
            },
        },
        "gateway": {"port": gateway_port or DEFAULT_GATEWAY_PORT},
    }


def migrate_config(doc: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Move legacy keys to their current locations (in place).

    A document with no legacy keys is left untouched and yields an empty
    change list, which is what makes running this on every launch safe.

    Args:
        doc: Parsed config document. Mutated in place.

    Returns:
        (migrated, changes) where `changes` holds one human-readable line
        per relocation and `migrated` is True iff `changes` is non-empty.
    """
    changes: list[str] = []
    if not isinstance(doc, dict):
        return False, changes

    if isinstance(doc.get("agent"), dict):
        _migrate_agent_section(doc, changes)

    gateway = doc.get("gateway")
    if isinstance(gateway, dict) and gateway.get("token") and not gateway.get("auth"):
        gateway["auth"] = {"mode": "token", "token": gateway.pop("token")}
        changes.append("gateway.token -> gateway.auth")

    return bool(changes), changes


def repair_config(doc: dict[str, Any]) -> list[str]:
    """
    Enforce the open-DM invariant on every channel (in place).

    For each channel whose dmPolicy is "open", allowFrom must be a list
    containing "*": the wildcard is appended to an existing list, and a
    missing or non-list value is replaced by ["*"].

    Returns:
        Names of the channels that were changed.
    """
    repaired: list[str] = []
    channels = doc.get("channels") if isinstance(doc, dict) else None
    if not isinstance(channels, dict):
        return repaired

    for name, channel in channels.items():
        if not isinstance(channel, dict) or channel.get("dmPolicy") != "open":
            continue
        allow_from = channel.get("allowFrom")
        if isinstance(allow_from, list):
            if WILDCARD in allow_from:
                continue
            allow_from.append(WILDCARD)
        else:
            channel["allowFrom"] = [WILDCARD]
        repaired.append(name)

    return repaired


# -- Helper Functions ---------------------------------------------------------

def _ensure_dict(parent: dict, key: str) -> dict:
    """Return parent[key], replacing it with {} if missing or not a dict."""
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
        parent[key] = value
    return value


def _merge_into(parent: dict, key: str, value: Any) -> None:
    """Merge dict values into parent[key]; anything else overwrites."""
    if isinstance(value, dict) and isinstance(parent.get(key), dict):
        parent[key].update(value)
    else:
        parent[key] = value


def _migrate_agent_section(doc: dict, changes: list[str]) -> None:
    """Relocate every key of doc["agent"] and remove the legacy block."""
    raw = doc["agent"]
    section = LegacyAgentSection.model_validate(raw)

    # Containers are created only when something is moved into them.
    def defaults() -> dict:
        return _ensure_dict(_ensure_dict(doc, "agents"), "defaults")

    def tools() -> dict:
        return _ensure_dict(doc, "tools")

    if not raw:
        changes.append("agent (empty) removed")

    if section.given("model"):
        if isinstance(section.model, str):
            _ensure_dict(defaults(), "model")["primary"] = section.model
            changes.append("agent.model (string) -> agents.defaults.model.primary")
        elif isinstance(section.model, dict):
            _ensure_dict(defaults(), "model").update(section.model)
            changes.append("agent.model (object) -> agents.defaults.model")
        else:
            changes.append("agent.model (unsupported value) dropped")

    if section.given("model_fallbacks"):
        _ensure_dict(defaults(), "model")["fallbacks"] = section.model_fallbacks
        changes.append("agent.modelFallbacks -> agents.defaults.model.fallbacks")

    if section.given("image_model"):
        if isinstance(section.image_model, str):
            defaults()["imageModel"] = {"primary": section.image_model}
            changes.append("agent.imageModel (string) -> agents.defaults.imageModel.primary")
        else:
            defaults()["imageModel"] = section.image_model
            changes.append("agent.imageModel (object) -> agents.defaults.imageModel")

    if section.given("tools"):
        if isinstance(section.tools, dict):
            for key, value in section.tools.items():
                tools()[key] = value
                changes.append(f"agent.tools.{key} -> tools.{key}")
        else:
            defaults()["tools"] = section.tools
            changes.append("agent.tools -> agents.defaults.tools")

    if section.given("elevated"):
        tools()["elevated"] = section.elevated
        changes.append("agent.elevated -> tools.elevated")

    if section.given("bash"):
        tools()["exec"] = section.bash
        changes.append("agent.bash -> tools.exec")

    for name in ("sandbox", "subagents"):
        if section.given(name):
            _split_tool_settings(name, getattr(section, name), defaults, tools, changes)

    for key, value in (section.model_extra or {}).items():
        defaults()[key] = value
        changes.append(f"agent.{key} -> agents.defaults.{key}")

    del doc["agent"]


def _split_tool_settings(name, value, defaults, tools, changes: list[str]) -> None:
    """
    Split agent.<name> into tools.<name>.tools and agents.defaults.<name>.

    Used for `sandbox` and `subagents`, which both carry a nested `tools`
    policy next to their own settings.
    """
    if not isinstance(value, dict):
        defaults()[name] = value
        changes.append(f"agent.{name} -> agents.defaults.{name}")
        return

    rest = dict(value)
    if "tools" in rest:
        _ensure_dict(tools(), name)["tools"] = rest.pop("tools")
        changes.append(f"agent.{name}.tools -> tools.{name}.tools")

    if rest or "tools" not in value:
        _merge_into(defaults(), name, rest)
        changes.append(f"agent.{name} -> agents.defaults.{name}")
