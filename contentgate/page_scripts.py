from __future__ import annotations

VIEWPORT_LOCK_SCRIPT_VERSION = "1"


# NOTE: Injected after every navigation completes. Idempotent: the meta/style nodes
# carry fixed ids and the gesture listener is guarded by a global flag, so repeated
# runs on the same document add nothing.
# - locks the viewport at scale 1.0 (no user scaling)
# - pins form-control font size to 16px (prevents focus zoom) and limits touch to panning
# - cancels native pinch gestures
VIEWPORT_LOCK_SCRIPT_SOURCE = r"""
(() => {
  const VERSION = "1";
  const g = globalThis;
  const doc = g.document;
  if (!doc) return { ok: false, reason: "no_document" };
  const head = doc.head || doc.getElementsByTagName("head")[0] || doc.documentElement;
  if (!head) return { ok: false, reason: "no_head" };

  let meta = doc.getElementById("__cg_viewport");
  if (!meta) {
    meta = doc.createElement("meta");
    meta.id = "__cg_viewport";
    meta.name = "viewport";
    head.appendChild(meta);
  }
  meta.content = "width=device-width, initial-scale=1.0, maximum-scale=1.0, user-scalable=no";

  let style = doc.getElementById("__cg_style");
  if (!style) {
    style = doc.createElement("style");
    style.id = "__cg_style";
    head.appendChild(style);
  }
  style.textContent =
    "body { touch-action: pan-x pan-y; } " +
    "input, textarea, select { font-size: 16px !important; }";

  if (!g.__cgGestureLock) {
    doc.addEventListener("gesturestart", (e) => e.preventDefault(), { passive: false });
    g.__cgGestureLock = VERSION;
  }
  return { ok: true, version: VERSION };
})()
"""


__all__ = ["VIEWPORT_LOCK_SCRIPT_SOURCE", "VIEWPORT_LOCK_SCRIPT_VERSION"]
