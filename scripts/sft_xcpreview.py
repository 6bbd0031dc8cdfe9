#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "fastmcp",
#     "pillow>=10.0",
#     "pyobjc-framework-Quartz>=11.0; sys_platform == 'darwin'",
#     "pyobjc-framework-ApplicationServices>=11.0; sys_platform == 'darwin'",
#     "pyobjc-framework-Cocoa>=11.0; sys_platform == 'darwin'",
# ]
# ///
"""Xcode preview capture: find the live simulator canvas and crop it out.

Locates the SwiftUI preview device inside an Xcode window by walking the
window's accessibility tree, captures the window, and writes only the
simulator region as a PNG. Also reports which source file the editor has open.

Three tools:
  permissions   — screen recording + accessibility grant state
  list_windows  — host windows matching a bundle id (and optional title)
  capture       — crop the active simulator preview to a PNG

Detection is purely structural (AX roles, subroles, labels, frames); the
image content is never inspected.

Usage:
    sft_xcpreview.py permissions
    sft_xcpreview.py permissions --prompt-screen --prompt-accessibility
    sft_xcpreview.py list-windows
    sft_xcpreview.py list-windows "MyApp" --all-windows
    sft_xcpreview.py capture
    sft_xcpreview.py capture "MyApp" -i 1 -m 800 -o /tmp/preview.png
    sft_xcpreview.py mcp-stdio
"""

import argparse
import contextlib
import json
import math
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

from PIL import Image

# =============================================================================
# LOGGING
# =============================================================================
_LEVELS = {"TRACE": 5, "DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "FATAL": 50}
_THRESHOLD = _LEVELS.get(os.environ.get("SFB_LOG_LEVEL", "INFO"), 20)
_LOG_DIR = os.environ.get("SFB_LOG_DIR", "")
_SCRIPT = Path(__file__).stem
_LOG = (
    Path(_LOG_DIR) / f"{_SCRIPT}_log.tsv"
    if _LOG_DIR
    else Path(__file__).parent / f"{_SCRIPT}_log.tsv"
)
_HEADER = "#timestamp\tscript\tlevel\tevent\tmessage\tdetail\tmetrics\ttrace\n"


def _log(
    level: str,
    event: str,
    msg: str,
    *,
    detail: str = "",
    metrics: str = "",
    trace: str = "",
):
    """Append TSV log line. Logging never crashes the main flow."""
    if _LEVELS.get(level, 20) < _THRESHOLD:
        return
    try:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        write_header = not _LOG.exists()
        with open(_LOG, "a") as f:
            if write_header:
                f.write(_HEADER)
            f.write(
                f"{ts}\t{_SCRIPT}\t{level}\t{event}\t{msg}\t{detail}\t{metrics}\t{trace}\n"
            )
    except Exception:
        pass


# =============================================================================
# CONFIGURATION
# =============================================================================
EXPOSED = ["permissions", "list_windows", "capture"]

VERSION = "1.0.0"

CONFIG = {
    "bundle_id": os.environ.get("SFB_XCPREVIEW_BUNDLE_ID", "com.apple.dt.Xcode"),
    "capture_dir": os.environ.get("SFB_XCPREVIEW_CAPTURE_DIR", "/tmp/xcode-simulator-captures"),
    "max_long_edge": 1200,        # Output longest edge in px
    "max_capture_px": 16_384,     # Per-dimension cap on the requested window capture
    "scan_depth": 12,             # AX depth for simulator detection
    "context_depth": 14,          # AX depth for the editor-context search
    "max_children": 120,          # Children visited per AX node
}

# Empirically tuned; kept exactly for compatibility with existing captures.
SCORING = {
    "content_subrole": 220,       # Node subrole is a device content container
    "content_subrole_hits": 3,    # Keyword-counter weight of that subrole
    "keyword_per_hit": 12,
    "keyword_cap": 60,
    "container_role": 8,
    "handset_aspect": 20,
    "aspect_range": (1.6, 2.6),   # height / width, inclusive
    "large_area": 8,
    "min_area_pt2": 40_000,
    "min_score": 70,
    "confidence_divisor": 260.0,
    "confidence_range": (0.1, 0.99),
}

DEVICE_KEYWORDS = ("iphone", "ipad", "watch", "vision", "simulator")
CONTENT_SUBROLES = ("ioscontentgroup", "devicecontentgroup")
CONTAINER_ROLES = ("axgroup", "axscrollarea")

EDITOR_CONTEXT_MARKER = "editor context"
TITLE_SEPARATOR = "—"  # em-dash: "File.swift — Project — Scheme"
MAX_EXTENSION_LEN = 12

# Error kinds
PERMISSION_DENIED = "permission_denied"
HOST_NOT_RUNNING = "host_not_running"
NO_MATCHING_WINDOW = "no_matching_window"
REGION_NOT_DETECTED = "region_not_detected"
GEOMETRY_OUT_OF_BOUNDS = "geometry_out_of_bounds"
IMAGE_IO_FAILURE = "image_io_failure"
INVALID_REQUEST = "invalid_request"

REGION_NOT_DETECTED_MESSAGE = (
    "No active simulator preview detected in the selected window. "
    "Ensure the SwiftUI Preview canvas is open with a live device."
)


# =============================================================================
# CORE FUNCTIONS
# =============================================================================


class CaptureError(Exception):
    """A terminal capture failure with one of the error kinds above."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


# --- Geometry transform -------------------------------------------------------


def _round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def _frame_area(frame: tuple) -> float:
    _, _, w, h = frame
    return max(0.0, w) * max(0.0, h)


def _frame_dict(frame: tuple) -> dict:
    x, y, w, h = frame
    return {"x": x, "y": y, "w": w, "h": h}


def _points_to_pixel_rect(
    target: tuple, origin: tuple, scale: float, image_size: tuple
) -> tuple | None:
    """Map a global point-space rect onto pixel bounds of a captured image.

    target is (x, y, w, h) in points, origin is the capture's top-left in
    points, scale is points-to-pixels. Returns (left, top, right, bottom)
    in pixels, or None when the rect is under 2 px on a side or any edge
    falls outside the image. Never clamps.
    """
    scale = max(0.01, scale)
    tx, ty, tw, th = target
    ox, oy = origin
    x0 = (tx - ox) * scale
    y0 = (ty - oy) * scale
    x1 = (tx + tw - ox) * scale
    y1 = (ty + th - oy) * scale

    left, right = sorted((x0, x1))
    top, bottom = sorted((y0, y1))
    left, top, right, bottom = (
        _round_half_away(left),
        _round_half_away(top),
        _round_half_away(right),
        _round_half_away(bottom),
    )

    if right - left < 2 or bottom - top < 2:
        return None
    img_w, img_h = image_size
    if left < 0 or top < 0 or right > img_w or bottom > img_h:
        return None
    return left, top, right, bottom


def _clamp_pixel_dimension(candidate: int) -> int:
    resolved = candidate if candidate > 0 else 1
    return max(1, min(CONFIG["max_capture_px"], resolved))


def _capture_dimensions(frame: tuple, scale: float) -> tuple[int, int]:
    """Pixel size to request for a window capture of frame at scale."""
    _, _, w, h = frame
    return (
        _clamp_pixel_dimension(_round_half_away(w * scale)),
        _clamp_pixel_dimension(_round_half_away(h * scale)),
    )


# --- Image crop / resize pipeline --------------------------------------------


def _crop_and_resize(image, box: tuple, max_long_edge: int):
    """Crop losslessly, then downscale so the long edge fits max_long_edge.

    Returns (image, info) where info carries original_width/original_height
    (the crop before resizing) and scale_applied (1.0 when untouched).
    """
    if max_long_edge < 1:
        raise CaptureError(INVALID_REQUEST, "max_long_edge must be >= 1")
    if image.width <= 0 or image.height <= 0:
        raise CaptureError(IMAGE_IO_FAILURE, "Cannot crop image with zero dimensions")

    try:
        cropped = image.crop(box)
        cropped.load()
    except (OSError, ValueError) as e:
        raise CaptureError(IMAGE_IO_FAILURE, f"Image crop failed at {box}: {e}") from e

    original_w, original_h = cropped.size
    info = {"original_width": original_w, "original_height": original_h, "scale_applied": 1.0}

    long_edge = max(original_w, original_h)
    if long_edge <= 0:
        raise CaptureError(IMAGE_IO_FAILURE, "Cannot resize image with zero dimensions")
    if long_edge <= max_long_edge:
        return cropped, info

    scale = max_long_edge / long_edge
    target_w = max(1, _round_half_away(original_w * scale))
    target_h = max(1, _round_half_away(original_h * scale))
    try:
        resized = cropped.resize((target_w, target_h), Image.Resampling.LANCZOS)
    except (OSError, ValueError, MemoryError) as e:
        raise CaptureError(
            IMAGE_IO_FAILURE, f"Failed to create resize surface {target_w}x{target_h}: {e}"
        ) from e
    info["scale_applied"] = scale
    return resized, info


def _write_png(image, path: Path):
    """Write PNG atomically: encode to a hidden sibling, then rename into place."""
    partial = path.with_name(f".{path.name}.partial")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        image.save(partial, format="PNG")
        os.replace(partial, path)
    except OSError as e:
        with contextlib.suppress(OSError):
            partial.unlink()
        raise CaptureError(IMAGE_IO_FAILURE, f"Failed to write PNG to {path}: {e}") from e


def _crop_and_write(
    image,
    origin: tuple,
    scale: float,
    target: tuple,
    output_path: str,
    max_long_edge: int,
) -> dict:
    """Geometry transform + crop/resize + PNG write. Returns the crop record."""
    box = _points_to_pixel_rect(target, origin, scale, image.size)
    if box is None:
        raise CaptureError(
            GEOMETRY_OUT_OF_BOUNDS, "Calculated crop rect is outside captured image bounds"
        )

    out, info = _crop_and_resize(image, box, max_long_edge)
    path = Path(output_path).expanduser()
    _write_png(out, path)
    return {
        "path": str(path),
        "width": out.width,
        "height": out.height,
        **info,
    }


# --- Accessibility tree scanner ----------------------------------------------


def _new_signals() -> dict:
    return {"keyword_count": 0, "has_content_subrole": False}


def _merge_signals(into: dict, other: dict):
    into["keyword_count"] += other["keyword_count"]
    into["has_content_subrole"] = into["has_content_subrole"] or other["has_content_subrole"]


def _is_content_subrole(subrole: str) -> bool:
    return subrole.lower() in CONTENT_SUBROLES


def _score_candidate(frame: tuple, role: str, subrole: str, signals: dict) -> dict | None:
    """Score one framed node. None when below the acceptance cutoff."""
    score = 0
    reasons = []

    if _is_content_subrole(subrole):
        score += SCORING["content_subrole"]
        reasons.append(f"subrole={subrole}")

    if signals["keyword_count"] > 0:
        score += min(SCORING["keyword_cap"], signals["keyword_count"] * SCORING["keyword_per_hit"])
        reasons.append("device-keywords")

    if role.lower() in CONTAINER_ROLES:
        score += SCORING["container_role"]

    _, _, w, h = frame
    aspect = h / max(w, 1)
    lo, hi = SCORING["aspect_range"]
    if lo <= aspect <= hi:
        score += SCORING["handset_aspect"]
        reasons.append("handset-aspect")

    if _frame_area(frame) > SCORING["min_area_pt2"]:
        score += SCORING["large_area"]

    if score < SCORING["min_score"]:
        return None

    floor, ceiling = SCORING["confidence_range"]
    return {
        "frame": frame,
        "score": score,
        "confidence": min(ceiling, max(floor, score / SCORING["confidence_divisor"])),
        "reason": ", ".join(reasons),
    }


def _offer_candidate(state: dict, candidate: dict):
    # Higher score wins; equal score keeps the tighter box. First seen otherwise.
    best = state["best"]
    if best is None or candidate["score"] > best["score"]:
        state["best"] = candidate
    elif candidate["score"] == best["score"] and _frame_area(candidate["frame"]) < _frame_area(
        best["frame"]
    ):
        state["best"] = candidate


def _scan_node(node, depth: int, max_depth: int, state: dict) -> dict:
    role = node.role() or ""
    subrole = node.subrole() or ""
    blob = " ".join(
        (node.title() or "", node.identifier() or "", node.description() or "", role, subrole)
    ).lower()

    signals = _new_signals()
    if any(word in blob for word in DEVICE_KEYWORDS):
        signals["keyword_count"] += 1
    if _is_content_subrole(subrole):
        signals["has_content_subrole"] = True
        signals["keyword_count"] += SCORING["content_subrole_hits"]

    if depth < max_depth:
        for child in node.children()[: CONFIG["max_children"]]:
            _merge_signals(signals, _scan_node(child, depth + 1, max_depth, state))

    frame = node.frame()
    if frame is not None:
        candidate = _score_candidate(frame, role, subrole, signals)
        if candidate is not None:
            _offer_candidate(state, candidate)
    return signals


def _detect_region(root, max_depth: int | None = None) -> tuple[dict | None, dict]:
    """Find the best simulator-canvas candidate under root.

    Depth-first, sequential, bounded by max_depth and CONFIG["max_children"].
    Returns (candidate or None, signal summary of the whole tree).
    """
    if max_depth is None:
        max_depth = CONFIG["scan_depth"]
    state = {"best": None}
    signals = _scan_node(root, 0, max_depth, state)
    return state["best"], signals


# --- Window resolver ----------------------------------------------------------


def _match_windows(raw_windows: list, live_apps: dict, title_contains: str | None) -> list:
    """Filter a raw window list down to HostWindow records.

    live_apps maps pid -> running-app record for the target bundle id.
    Only normal-layer windows are kept; title match is case-insensitive.
    """
    needle = (title_contains or "").casefold()
    windows = []
    for w in raw_windows:
        app = live_apps.get(w["owner_pid"])
        if app is None or w["layer"] != 0:
            continue
        title = w["title"] or ""
        if needle and needle not in title.casefold():
            continue
        windows.append({
            "id": w["id"],
            "title": title,
            "frame": w["frame"],
            "app": {"name": app["name"], "bundle_id": app["bundle_id"], "pid": app["pid"]},
        })
    return windows


def _live_apps(apps: list) -> dict:
    return {a["pid"]: a for a in apps if not a["terminated"]}


def _resolve_windows(
    host, bundle_id: str, title_contains: str | None, on_screen_only: bool, apps: list | None = None
) -> list:
    if apps is None:
        apps = host.running_apps(bundle_id)
    live = _live_apps(apps)
    if not live:
        return []
    return _match_windows(host.window_list(on_screen_only), live, title_contains)


def _pick_window(windows: list, expected_title: str, index: int):
    """Pick the window matching expected_title, tolerating small title drift.

    Precedence: exact title, case-insensitive containment, windows[index],
    first window. Returns None only for an empty list.
    """
    expected = (expected_title or "").strip()
    if expected:
        for window in windows:
            if window.title() == expected:
                return window
        folded = expected.casefold()
        for window in windows:
            title = window.title()
            if title and folded in title.casefold():
                return window
    if 0 <= index < len(windows):
        return windows[index]
    return windows[0] if windows else None


def _window_payload(window: dict) -> dict:
    return {
        "id": window["id"],
        "title": window["title"],
        "frame": _frame_dict(window["frame"]),
        "app": window["app"],
    }


# --- Active-source inference --------------------------------------------------


def _normalize_file_name(raw: str | None) -> str | None:
    """Reduce raw text to a plausible file name, or None."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return None
    candidate = trimmed.rstrip("/").rsplit("/", 1)[-1] if "/" in trimmed else trimmed
    if "." not in candidate or candidate.startswith("."):
        return None
    extension = candidate.rsplit(".", 1)[1]
    if not extension or len(extension) > MAX_EXTENSION_LEN or not extension.isalnum():
        return None
    return candidate


def _normalize_file_name_from_title(title: str | None) -> str | None:
    # Trailing segment first, then the leading ones, then the raw title.
    parts = [p.strip() for p in (title or "").split(TITLE_SEPARATOR, 4)]
    parts = [p for p in parts if p]
    for part in parts[-1:] + parts[:-1]:
        name = _normalize_file_name(part)
        if name:
            return name
    return _normalize_file_name(title)


def _find_editor_context(node, depth: int, max_depth: int) -> str | None:
    identifier = (node.identifier() or "").lower()
    if EDITOR_CONTEXT_MARKER in identifier:
        summary = (node.description() or "").strip()
        if summary:
            return summary
    if depth >= max_depth:
        return None
    for child in node.children()[: CONFIG["max_children"]]:
        summary = _find_editor_context(child, depth + 1, max_depth)
        if summary:
            return summary
    return None


def _infer_active_file(window_node, window_title: str) -> tuple[str | None, str | None]:
    """Best guess at the file open in the editor, with the method that found it.

    Tries the editor-context summary in the AX tree, the AX window title,
    then the title from the window list.
    """
    summary = _find_editor_context(window_node, 0, CONFIG["context_depth"])
    name = _normalize_file_name(summary)
    if name:
        return name, "ax-editor-context"

    name = _normalize_file_name_from_title(window_node.title())
    if name:
        return name, "ax-window-title"

    name = _normalize_file_name_from_title(window_title)
    if name:
        return name, "cg-window-title"

    return None, None


# --- macOS host adapter -------------------------------------------------------


def _mac_imports() -> dict:
    """Lazy import of the pyobjc symbols the host adapter needs."""
    import Quartz
    from AppKit import NSRunningApplication
    from ApplicationServices import (
        AXIsProcessTrustedWithOptions,
        AXUIElementCopyAttributeValue,
        AXUIElementCreateApplication,
        AXUIElementGetTypeID,
        AXValueGetTypeID,
        AXValueGetValue,
        kAXValueCGRectType,
    )
    from CoreFoundation import CFGetTypeID

    return {
        "Q": Quartz,
        "NSRunningApplication": NSRunningApplication,
        "AXIsProcessTrustedWithOptions": AXIsProcessTrustedWithOptions,
        "AXUIElementCopyAttributeValue": AXUIElementCopyAttributeValue,
        "AXUIElementCreateApplication": AXUIElementCreateApplication,
        "AXUIElementGetTypeID": AXUIElementGetTypeID,
        "AXValueGetTypeID": AXValueGetTypeID,
        "AXValueGetValue": AXValueGetValue,
        "kAXValueCGRectType": kAXValueCGRectType,
        "CFGetTypeID": CFGetTypeID,
    }


class AXNode:
    """Read-only handle on one AXUIElement of another process.

    Every accessor is a fresh query. Any AX error (element gone, attribute
    unsupported, app busy) reads as None or an empty list.
    """

    def __init__(self, element, mac: dict):
        self._el = element
        self._mac = mac

    def _attr(self, name: str):
        err, value = self._mac["AXUIElementCopyAttributeValue"](self._el, name, None)
        if err != 0:
            return None
        return value

    def _string(self, name: str) -> str | None:
        value = self._attr(name)
        return str(value) if isinstance(value, str) else None

    def _elements(self, name: str) -> list:
        value = self._attr(name)
        if not value:
            return []
        type_id = self._mac["AXUIElementGetTypeID"]()
        get_type = self._mac["CFGetTypeID"]
        return [AXNode(item, self._mac) for item in value if get_type(item) == type_id]

    def role(self) -> str | None:
        return self._string("AXRole")

    def subrole(self) -> str | None:
        return self._string("AXSubrole")

    def title(self) -> str | None:
        return self._string("AXTitle")

    def identifier(self) -> str | None:
        return self._string("AXIdentifier")

    def description(self) -> str | None:
        return self._string("AXDescription")

    def frame(self) -> tuple | None:
        value = self._attr("AXFrame")
        if value is None or self._mac["CFGetTypeID"](value) != self._mac["AXValueGetTypeID"]():
            return None
        ok, rect = self._mac["AXValueGetValue"](value, self._mac["kAXValueCGRectType"], None)
        if not ok:
            return None
        return (
            float(rect.origin.x),
            float(rect.origin.y),
            float(rect.size.width),
            float(rect.size.height),
        )

    def children(self) -> list:
        return self._elements("AXChildren")

    def windows(self) -> list:
        return self._elements("AXWindows")


def _cg_image_to_pil(cg_image, Q):
    """Copy a CGImage (32-bit BGRA, premultiplied-first) into a Pillow RGBA image."""
    width = Q.CGImageGetWidth(cg_image)
    height = Q.CGImageGetHeight(cg_image)
    bytes_per_row = Q.CGImageGetBytesPerRow(cg_image)
    data = Q.CGDataProviderCopyData(Q.CGImageGetDataProvider(cg_image))
    return Image.frombuffer(
        "RGBA", (width, height), bytes(data), "raw", "BGRA", bytes_per_row, 1
    )


class MacHost:
    """macOS capabilities: permissions, processes, windows, capture, AX."""

    def __init__(self):
        self._mac = _mac_imports()

    def permissions(self, prompt_screen: bool = False, prompt_accessibility: bool = False) -> dict:
        Q = self._mac["Q"]
        if prompt_screen and not Q.CGPreflightScreenCaptureAccess():
            Q.CGRequestScreenCaptureAccess()
        screen = bool(Q.CGPreflightScreenCaptureAccess())
        trusted = bool(
            self._mac["AXIsProcessTrustedWithOptions"](
                {"AXTrustedCheckOptionPrompt": bool(prompt_accessibility)}
            )
        )
        return {"screen_recording": screen, "accessibility": trusted}

    def running_apps(self, bundle_id: str) -> list:
        apps = self._mac["NSRunningApplication"].runningApplicationsWithBundleIdentifier_(bundle_id)
        return [
            {
                "pid": int(app.processIdentifier()),
                "name": str(app.localizedName() or ""),
                "bundle_id": str(app.bundleIdentifier() or bundle_id),
                "terminated": bool(app.isTerminated()),
            }
            for app in apps or []
        ]

    def window_list(self, on_screen_only: bool = True) -> list:
        Q = self._mac["Q"]
        option = Q.kCGWindowListOptionOnScreenOnly if on_screen_only else Q.kCGWindowListOptionAll
        raw = Q.CGWindowListCopyWindowInfo(
            option | Q.kCGWindowListExcludeDesktopElements, Q.kCGNullWindowID
        )
        windows = []
        for w in raw or []:
            bounds = w.get("kCGWindowBounds", {})
            windows.append({
                "id": int(w.get("kCGWindowNumber", 0)),
                "title": str(w.get("kCGWindowName", "") or ""),
                "owner_pid": int(w.get("kCGWindowOwnerPID", -1)),
                "owner_name": str(w.get("kCGWindowOwnerName", "") or ""),
                "layer": int(w.get("kCGWindowLayer", 0)),
                "frame": (
                    float(bounds.get("X", 0)),
                    float(bounds.get("Y", 0)),
                    float(bounds.get("Width", 0)),
                    float(bounds.get("Height", 0)),
                ),
            })
        return windows

    def point_pixel_scale(self, frame: tuple) -> float:
        """Largest backing scale among the displays the frame touches."""
        Q = self._mac["Q"]
        err, displays, count = Q.CGGetDisplaysWithRect(Q.CGRectMake(*frame), 16, None, None)
        scales = [1.0]
        if err == 0:
            for display in list(displays or [])[:count]:
                mode = Q.CGDisplayCopyDisplayMode(display)
                if mode is None:
                    continue
                points = Q.CGDisplayModeGetWidth(mode)
                if points:
                    scales.append(Q.CGDisplayModeGetPixelWidth(mode) / points)
        return max(scales)

    def capture_window(self, window: dict, width: int, height: int):
        """Still image of one window at best resolution, sized width x height px."""
        Q = self._mac["Q"]
        cg_image = Q.CGWindowListCreateImage(
            Q.CGRectMake(*window["frame"]),
            Q.kCGWindowListOptionIncludingWindow,
            window["id"],
            Q.kCGWindowImageBoundsIgnoreFraming | Q.kCGWindowImageBestResolution,
        )
        if cg_image is None:
            return None
        image = _cg_image_to_pil(cg_image, Q)
        if image.size != (width, height):
            image = image.resize((width, height), Image.Resampling.LANCZOS)
        return image

    def ax_windows(self, pid: int) -> list:
        app = self._mac["AXUIElementCreateApplication"](pid)
        return AXNode(app, self._mac).windows()


# --- Capture orchestrator -----------------------------------------------------


def _default_capture_path() -> str:
    stamp = datetime.now(timezone.utc).isoformat(timespec="seconds").replace(":", "-")
    return str(Path(CONFIG["capture_dir"]) / f"xcode-active-sim-{stamp}.png")


def _capture(
    host,
    bundle_id: str,
    title_contains: str | None,
    on_screen_only: bool,
    window_index: int,
    output_path: str,
    max_long_edge: int,
    prompt_screen: bool,
    prompt_accessibility: bool,
) -> dict:
    permissions = host.permissions(prompt_screen, prompt_accessibility)
    if not permissions["screen_recording"]:
        raise CaptureError(
            PERMISSION_DENIED,
            "Screen recording permission not granted. Enable it in System Settings > "
            "Privacy & Security > Screen Recording, or rerun with --prompt-screen.",
        )
    if not permissions["accessibility"]:
        raise CaptureError(
            PERMISSION_DENIED,
            "Accessibility permission required for active simulator capture. Enable it in "
            "System Settings > Privacy & Security > Accessibility, or rerun with "
            "--prompt-accessibility.",
        )
    if max_long_edge < 1:
        raise CaptureError(INVALID_REQUEST, "max_long_edge must be >= 1")

    apps = host.running_apps(bundle_id)
    if not _live_apps(apps):
        raise CaptureError(
            HOST_NOT_RUNNING,
            f"{bundle_id} is not running. Open it with a project and an active preview.",
        )

    windows = _resolve_windows(host, bundle_id, title_contains, on_screen_only, apps=apps)
    if not windows:
        raise CaptureError(
            NO_MATCHING_WINDOW,
            f"{bundle_id} is running but no visible windows matched. "
            "Found 0 matching windows. Open a workspace window.",
        )
    if not 0 <= window_index < len(windows):
        raise CaptureError(
            NO_MATCHING_WINDOW,
            f"No window found at index {window_index}. Found {len(windows)} matching windows.",
        )
    window = windows[window_index]

    scale = max(1.0, host.point_pixel_scale(window["frame"]))
    width, height = _capture_dimensions(window["frame"], scale)
    image = host.capture_window(window, width, height)
    if image is None:
        raise CaptureError(
            IMAGE_IO_FAILURE,
            f"Window capture returned no image for window {window['id']}.",
        )

    ax_windows = host.ax_windows(window["app"]["pid"])
    ax_window = _pick_window(ax_windows, window["title"], window_index)
    if ax_window is None:
        raise CaptureError(REGION_NOT_DETECTED, REGION_NOT_DETECTED_MESSAGE)

    candidate, signals = _detect_region(ax_window)
    _log(
        "DEBUG", "detect",
        f"candidate={'yes' if candidate else 'no'}",
        detail=(
            f"keyword_count={signals['keyword_count']} "
            f"has_content_subrole={signals['has_content_subrole']}"
        ),
    )
    if candidate is None:
        raise CaptureError(REGION_NOT_DETECTED, REGION_NOT_DETECTED_MESSAGE)

    file_name, file_source = _infer_active_file(ax_window, window["title"])

    x, y, _, _ = window["frame"]
    crop = _crop_and_write(image, (x, y), scale, candidate["frame"], output_path, max_long_edge)

    return {
        "image_path": crop["path"],
        "image_width": crop["width"],
        "image_height": crop["height"],
        "original_width": crop["original_width"],
        "original_height": crop["original_height"],
        "scale_applied": crop["scale_applied"],
        "max_long_edge_applied": max_long_edge,
        "active_file_name": file_name,
        "active_file_source": file_source,
        "region": {
            "frame": _frame_dict(candidate["frame"]),
            "score": candidate["score"],
            "confidence": candidate["confidence"],
            "reason": candidate["reason"],
        },
        "captured_at": datetime.now(timezone.utc).isoformat(),
        "window": _window_payload(window),
        "permissions": permissions,
    }


def _permissions_impl(
    prompt_screen: bool = False, prompt_accessibility: bool = False, host=None
) -> tuple[dict, dict]:
    """Screen recording and accessibility grant state, optionally prompting.

    CLI: permissions
    MCP: permissions
    """
    t0 = time.monotonic()
    host = host or MacHost()
    result = host.permissions(prompt_screen, prompt_accessibility)
    elapsed_ms = int((time.monotonic() - t0) * 1000)
    _log(
        "INFO", "permissions",
        f"screen_recording={result['screen_recording']} accessibility={result['accessibility']}",
        detail=f"prompt_screen={prompt_screen} prompt_accessibility={prompt_accessibility}",
        metrics=f"elapsed_ms={elapsed_ms}",
    )
    return result, {"elapsed_ms": elapsed_ms}


def _list_windows_impl(
    bundle_id: str | None = None,
    title_contains: str | None = None,
    on_screen_only: bool = True,
    host=None,
) -> tuple[list, dict]:
    """Host windows owned by bundle_id, optionally filtered by title.

    CLI: list-windows
    MCP: list_windows
    """
    t0 = time.monotonic()
    host = host or MacHost()
    bundle_id = bundle_id or CONFIG["bundle_id"]
    windows = _resolve_windows(host, bundle_id, title_contains, on_screen_only)
    elapsed_ms = int((time.monotonic() - t0) * 1000)
    _log(
        "INFO", "list_windows", f"Found {len(windows)} windows for {bundle_id}",
        detail=f"title_contains={title_contains or ''} on_screen_only={on_screen_only}",
        metrics=f"elapsed_ms={elapsed_ms} windows={len(windows)}",
    )
    return [_window_payload(w) for w in windows], {"elapsed_ms": elapsed_ms, "windows": len(windows)}


def _capture_impl(
    bundle_id: str | None = None,
    title_contains: str | None = None,
    on_screen_only: bool = True,
    window_index: int = 0,
    output_path: str | None = None,
    max_long_edge: int | None = None,
    prompt_screen: bool = False,
    prompt_accessibility: bool = False,
    host=None,
) -> tuple[dict, dict]:
    """Capture the active simulator preview to a PNG.

    CLI: capture
    MCP: capture

    Returns (result, metrics). On failure result is {"error", "kind"} and
    no output file exists.
    """
    t0 = time.monotonic()
    bundle_id = bundle_id or CONFIG["bundle_id"]
    output_path = output_path or _default_capture_path()
    if max_long_edge is None:
        max_long_edge = CONFIG["max_long_edge"]

    try:
        host = host or MacHost()
        result = _capture(
            host,
            bundle_id,
            title_contains,
            on_screen_only,
            window_index,
            output_path,
            max_long_edge,
            prompt_screen,
            prompt_accessibility,
        )
    except CaptureError as e:
        elapsed_ms = int((time.monotonic() - t0) * 1000)
        _log(
            "ERROR", "capture", e.message,
            detail=f"kind={e.kind} bundle_id={bundle_id} window_index={window_index}",
            metrics=f"elapsed_ms={elapsed_ms}",
        )
        return {"error": e.message, "kind": e.kind}, {"elapsed_ms": elapsed_ms}

    elapsed_ms = int((time.monotonic() - t0) * 1000)
    _log(
        "INFO", "capture",
        f"Captured {result['image_width']}x{result['image_height']}px "
        f"(from {result['original_width']}x{result['original_height']}) "
        f"confidence={result['region']['confidence']:.2f}",
        detail=f"path={result['image_path']} file={result['active_file_name'] or ''}",
        metrics=f"elapsed_ms={elapsed_ms} score={result['region']['score']}",
    )
    return result, {"elapsed_ms": elapsed_ms}


# =============================================================================
# CLI INTERFACE
# =============================================================================


def _read_title(args) -> str | None:
    title = args.title
    if not title and not sys.stdin.isatty():
        title = sys.stdin.read().strip()
    return title or None


def main():
    parser = argparse.ArgumentParser(
        description="Capture the live simulator from an Xcode SwiftUI preview.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Workflow:
  1. permissions    -- check (or prompt for) screen recording + accessibility
  2. list-windows   -- see which host windows match
  3. capture        -- crop the active simulator preview to a PNG

TITLE is a case-insensitive window-title substring (or stdin).
""",
    )
    parser.add_argument("-V", "--version", action="version", version=f"sft_xcpreview {VERSION}")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    # permissions
    p_perm = sub.add_parser("permissions", help="Show screen recording + accessibility grants")
    p_perm.add_argument("-s", "--prompt-screen", action="store_true",
                        help="Request screen recording access if missing")
    p_perm.add_argument("-p", "--prompt-accessibility", action="store_true",
                        help="Request accessibility trust if missing")

    # list-windows
    p_list = sub.add_parser("list-windows", help="List host windows for a bundle id")
    p_list.add_argument("title", nargs="?", default="", help="Title substring filter (or stdin)")
    p_list.add_argument("-b", "--bundle-id", default=CONFIG["bundle_id"],
                        help=f"Host bundle id (default: {CONFIG['bundle_id']})")
    p_list.add_argument("-a", "--all-windows", action="store_true",
                        help="Include off-screen windows")

    # capture
    p_cap = sub.add_parser("capture", help="Crop the active simulator preview to a PNG")
    p_cap.add_argument("title", nargs="?", default="", help="Title substring filter (or stdin)")
    p_cap.add_argument("-b", "--bundle-id", default=CONFIG["bundle_id"],
                       help=f"Host bundle id (default: {CONFIG['bundle_id']})")
    p_cap.add_argument("-a", "--all-windows", action="store_true",
                       help="Include off-screen windows")
    p_cap.add_argument("-i", "--window-index", type=int, default=0,
                       help="Index into the matching windows (default: 0)")
    p_cap.add_argument("-o", "--output", default="",
                       help=f"PNG output path (default: {CONFIG['capture_dir']}/xcode-active-sim-<ts>.png)")
    p_cap.add_argument("-m", "--max-long-edge", type=int, default=CONFIG["max_long_edge"],
                       help=f"Downscale so the longest edge is at most this (default: {CONFIG['max_long_edge']})")
    p_cap.add_argument("-s", "--prompt-screen", action="store_true",
                       help="Request screen recording access if missing")
    p_cap.add_argument("-p", "--prompt-accessibility", action="store_true",
                       help="Request accessibility trust if missing")

    # MCP server
    sub.add_parser("mcp-stdio", help="Run as MCP server (stdio transport)")

    args = parser.parse_args()

    try:
        if args.command == "mcp-stdio":
            _run_mcp()
            return

        elif args.command == "permissions":
            result, metrics = _permissions_impl(args.prompt_screen, args.prompt_accessibility)
            print(json.dumps({"result": result, "metrics": metrics}, indent=2))

        elif args.command == "list-windows":
            windows, metrics = _list_windows_impl(
                args.bundle_id, _read_title(args), not args.all_windows
            )
            print(json.dumps({"windows": windows, "metrics": metrics}, indent=2))

        elif args.command == "capture":
            assert args.max_long_edge >= 1, "--max-long-edge must be >= 1"
            assert args.window_index >= 0, "--window-index must be >= 0"
            result, metrics = _capture_impl(
                bundle_id=args.bundle_id,
                title_contains=_read_title(args),
                on_screen_only=not args.all_windows,
                window_index=args.window_index,
                output_path=args.output or None,
                max_long_edge=args.max_long_edge,
                prompt_screen=args.prompt_screen,
                prompt_accessibility=args.prompt_accessibility,
            )
            if "error" in result:
                print(json.dumps(result), file=sys.stderr)
                sys.exit(1)
            print(json.dumps({"result": result, "metrics": metrics}, indent=2))

        else:
            parser.print_help()
            sys.exit(1)

    except AssertionError as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        _log("ERROR", args.command or "unknown", str(e))
        sys.exit(1)
    except Exception as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        _log("ERROR", args.command or "unknown", str(e))
        sys.exit(1)


# =============================================================================
# FASTMCP SERVER
# =============================================================================

def _run_mcp():
    """Start FastMCP server with all tools."""
    from fastmcp import FastMCP
    from fastmcp.exceptions import ToolError

    mcp = FastMCP("xcpreview")

    @mcp.tool()
    def permissions(prompt_screen: bool = False, prompt_accessibility: bool = False) -> str:
        """Check, and optionally prompt for, the macOS grants preview capture needs.

        Args:
            prompt_screen: Request screen recording access if it is missing.
            prompt_accessibility: Request accessibility trust if it is missing.

        Returns:
            JSON with screen_recording and accessibility booleans.
        """
        result, metrics = _permissions_impl(prompt_screen, prompt_accessibility)
        return json.dumps({"result": result, "metrics": metrics})

    @mcp.tool()
    def list_windows(bundle_id: str = "", title_contains: str = "", on_screen_only: bool = True) -> str:
        """List host application windows that capture can target.

        Args:
            bundle_id: Host bundle id (default com.apple.dt.Xcode).
            title_contains: Case-insensitive window-title substring filter.
            on_screen_only: Skip windows that are not on screen.

        Returns:
            JSON with windows array (id, title, frame in points, app) and metrics.
        """
        windows, metrics = _list_windows_impl(bundle_id or None, title_contains or None, on_screen_only)
        return json.dumps({"windows": windows, "metrics": metrics})

    @mcp.tool()
    def capture(
        bundle_id: str = "",
        title_contains: str = "",
        on_screen_only: bool = True,
        window_index: int = 0,
        output_path: str = "",
        max_long_edge: int = 1200,
        prompt_screen: bool = False,
        prompt_accessibility: bool = False,
    ) -> str:
        """Capture only the active simulator from an Xcode SwiftUI preview.

        Finds the preview device in the window's accessibility tree, crops it
        from a window capture, and downscales so the longest edge is at most
        max_long_edge. Fails if Xcode is not open or no preview is live.

        Args:
            bundle_id: Host bundle id (default com.apple.dt.Xcode).
            title_contains: Case-insensitive window-title substring filter.
            on_screen_only: Skip windows that are not on screen.
            window_index: Index into the matching windows.
            output_path: PNG path (default under /tmp/xcode-simulator-captures).
            max_long_edge: Longest output edge in pixels (>= 1).
            prompt_screen: Request screen recording access if it is missing.
            prompt_accessibility: Request accessibility trust if it is missing.

        Returns:
            JSON with image path and dimensions, detected region, active file hint.
        """
        result, metrics = _capture_impl(
            bundle_id=bundle_id or None,
            title_contains=title_contains or None,
            on_screen_only=on_screen_only,
            window_index=window_index,
            output_path=output_path or None,
            max_long_edge=max_long_edge,
            prompt_screen=prompt_screen,
            prompt_accessibility=prompt_accessibility,
        )
        if "error" in result:
            raise ToolError(result["error"])
        return json.dumps({"result": result, "metrics": metrics})

    print("xcpreview MCP server running (stdio transport)", file=sys.stderr)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
