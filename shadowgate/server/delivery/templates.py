"""
Default loader layer templates.

The pipeline treats this text as opaque; swap in another ILayerGenerator to
plug in a real obfuscator.
"""

from __future__ import annotations

import base64
import os
from string import Template
from typing import Any

SESSION_SALT_PLACEHOLDER = "__SESSION_SALT__"

_BOOTSTRAP = Template(
    """-- shadowgate loader v$version
local base = "$base_url/loader/$script_id"
local function fetch(layer)
  return game:HttpGet(base .. "?layer=" .. layer .. "&v=$version")
end
for _, layer in ipairs({"init", "3", "core", "5"}) do
  loadstring(fetch(layer))()
end
"""
)

_LAYERS = {
    2: Template(
        """-- layer 2: environment checks
local env = getfenv and getfenv() or _ENV
assert(env, "environment unavailable")
_G.__sg_$tag = { script = "$script_id", stage = 2 }
"""
    ),
    3: Template(
        """-- layer 3: endpoint table
_G.__sg_$tag.endpoints = {
  validate = "$base_url/validate",
  heartbeat = "$base_url/heartbeat",
}
"""
    ),
    4: Template(
        """-- layer 4: core
_G.__sg_$tag.salt = "$salt"
_G.__sg_$tag.stage = 4
"""
    ),
    5: Template(
        """-- layer 5: integrity
if _G.__sg_$tag.salt ~= "$salt" then error("integrity") end
_G.__sg_$tag.stage = 5
"""
    ),
}

_KICK_HANDLER = """-- layer 7: kick handler
return function(reason)
  local player = game:GetService("Players").LocalPlayer
  if player then player:Kick(reason or "Session terminated") end
end
"""


class LayerTemplates:
    """Produces source text for each loader layer."""

    def __init__(self, filler_size: int = 100 * 1024) -> None:
        self.filler_size = filler_size

    def generate(self, params: dict[str, Any]) -> str:
        layer = params["layer"]
        values = {
            "script_id": params.get("script_id", ""),
            "base_url": params.get("base_url", ""),
            "version": params.get("version", ""),
            "tag": str(params.get("script_id", ""))[:8].replace("-", "_"),
            "salt": SESSION_SALT_PLACEHOLDER,
        }
        if layer == 1:
            return _BOOTSTRAP.substitute(values)
        if layer in _LAYERS:
            return _LAYERS[layer].substitute(values)
        if layer == 6:  # noqa: PLR2004
            return self._filler()
        if layer == 7:  # noqa: PLR2004
            return _KICK_HANDLER
        msg = f"Unknown layer {layer}"
        raise ValueError(msg)

    def _filler(self) -> str:
        """Opaque verification blob of roughly filler_size characters."""
        raw = os.urandom(self.filler_size * 3 // 4)
        blob = base64.b64encode(raw).decode()
        lines = [blob[i : i + 120] for i in range(0, len(blob), 120)]
        return "-- layer 6\nlocal _ = [[\n" + "\n".join(lines) + "\n]]\n"
