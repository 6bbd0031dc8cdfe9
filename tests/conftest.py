"""
Pytest configuration and shared fixtures for the sft_xcpreview tests.

Provides in-memory stand-ins for the two external capabilities the engine
borrows: accessibility tree nodes and the macOS host (permissions, process
list, window list, capture, AX windows).
"""

import os
import tempfile

import pytest
from PIL import Image

# Keep the TSV log out of the source tree. Must run before the script imports.
os.environ.setdefault("SFB_LOG_DIR", tempfile.mkdtemp(prefix="sft_xcpreview-logs-"))


class FakeNode:
    """Static accessibility node with the AXNode accessor surface."""

    def __init__(
        self,
        role="AXGroup",
        subrole=None,
        title=None,
        identifier=None,
        description=None,
        frame=None,
        children=None,
    ):
        self._role = role
        self._subrole = subrole
        self._title = title
        self._identifier = identifier
        self._description = description
        self._frame = frame
        self._children = list(children or [])

    def role(self):
        return self._role

    def subrole(self):
        return self._subrole

    def title(self):
        return self._title

    def identifier(self):
        return self._identifier

    def description(self):
        return self._description

    def frame(self):
        return self._frame

    def children(self):
        return list(self._children)


class FakeHost:
    """MacHost stand-in driven by plain data."""

    def __init__(
        self,
        screen_recording=True,
        accessibility=True,
        apps=None,
        windows=None,
        scale=2.0,
        ax_windows=None,
        capture_none=False,
    ):
        self.grants = {"screen_recording": screen_recording, "accessibility": accessibility}
        self.apps = apps if apps is not None else [
            {"pid": 42, "name": "Xcode", "bundle_id": "com.apple.dt.Xcode", "terminated": False}
        ]
        self.windows = windows if windows is not None else []
        self.scale = scale
        self._ax_windows = ax_windows or []
        self.capture_none = capture_none
        self.capture_requests = []
        self.ax_requests = []

    def permissions(self, prompt_screen=False, prompt_accessibility=False):
        return dict(self.grants)

    def running_apps(self, bundle_id):
        return [a for a in self.apps if a["bundle_id"] == bundle_id]

    def window_list(self, on_screen_only=True):
        return list(self.windows)

    def point_pixel_scale(self, frame):
        return self.scale

    def capture_window(self, window, width, height):
        self.capture_requests.append((window["id"], width, height))
        if self.capture_none:
            return None
        return Image.new("RGB", (width, height), (30, 120, 200))

    def ax_windows(self, pid):
        self.ax_requests.append(pid)
        return list(self._ax_windows)


def raw_window(wid=7, title="ContentView.swift — MyApp — MyApp", pid=42, layer=0,
               frame=(100.0, 50.0, 800.0, 600.0)):
    return {
        "id": wid,
        "title": title,
        "owner_pid": pid,
        "owner_name": "Xcode",
        "layer": layer,
        "frame": frame,
    }


@pytest.fixture
def make_node():
    """Factory for FakeNode trees."""
    return FakeNode


@pytest.fixture
def make_host():
    """Factory for FakeHost instances."""
    return FakeHost


@pytest.fixture
def make_raw_window():
    """Factory for window-list records as MacHost.window_list returns them."""
    return raw_window


@pytest.fixture
def preview_window(make_node):
    """AX window with a live preview device and an editor-context node."""
    content = make_node(
        role="AXGroup",
        subrole="iOSContentGroup",
        frame=(400.0, 150.0, 200.0, 420.0),
    )
    device = make_node(
        role="AXGroup",
        description="iPhone 15 Pro",
        frame=(380.0, 120.0, 240.0, 480.0),
        children=[content],
    )
    canvas = make_node(
        role="AXScrollArea",
        identifier="Preview Canvas",
        frame=(360.0, 100.0, 500.0, 540.0),
        children=[device],
    )
    editor_context = make_node(
        role="AXStaticText",
        identifier="Editor Context",
        description="  MyApp/Views/ContentView.swift  ",
    )
    return make_node(
        role="AXWindow",
        title="ContentView.swift — MyApp — MyApp",
        frame=(100.0, 50.0, 800.0, 600.0),
        children=[editor_context, canvas],
    )
