"""
Input handler using xdotool for mouse and keyboard control.
Uses subprocess calls for zero Python memory overhead.

Pointer positions arrive normalized to the unit square and are mapped to
device pixels using the real screen size at call time.
"""

import logging
import shutil
import subprocess
from typing import Callable, Iterable, Optional, Tuple, Union


logger = logging.getLogger(__name__)

Button = Union[int, str]

BUTTONS = {
    "left": 1,
    "middle": 2,
    "right": 3,
}

# Upper bound on wheel clicks for one scroll message
MAX_SCROLL_CLICKS = 10

# Fallback when neither a size provider nor xdotool can tell us
DEFAULT_SCREEN_SIZE = (1920, 1080)


class InputHandler:
    """
    Handle mouse and keyboard input using xdotool.

    xdotool is used via subprocess to avoid Python library overhead.
    This approach uses virtually zero RAM beyond the subprocess itself.
    """

    def __init__(self, size_provider: Optional[Callable[[], Tuple[int, int]]] = None):
        """
        Initialize the input handler.

        Args:
            size_provider: Returns the target screen size in pixels. When not
                given, xdotool is asked for the display geometry.
        """
        self._xdotool_path = shutil.which("xdotool")

        if not self._xdotool_path:
            raise RuntimeError(
                "xdotool not found. Please install it:\n"
                "  sudo apt install xdotool"
            )

        self._size_provider = size_provider

    def _run_xdotool(self, *args: str) -> bool:
        """
        Run xdotool with given arguments.

        Returns:
            True if successful, False otherwise
        """
        try:
            subprocess.run(
                [self._xdotool_path, *args],
                check=True,
                capture_output=True,
                timeout=2
            )
            return True
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
            logger.warning("xdotool %s failed: %s", args[0] if args else "", e)
            return False

    def screen_dimensions(self) -> Tuple[int, int]:
        """Size of the controlled screen in pixels."""
        if self._size_provider is not None:
            return self._size_provider()

        try:
            result = subprocess.run(
                [self._xdotool_path, "getdisplaygeometry"],
                check=True,
                capture_output=True,
                text=True,
                timeout=2
            )
            width, height = result.stdout.split()[:2]
            return int(width), int(height)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, ValueError) as e:
            logger.warning("Could not read display geometry: %s", e)
            return DEFAULT_SCREEN_SIZE

    def _to_pixels(self, x: float, y: float) -> Tuple[int, int]:
        width, height = self.screen_dimensions()
        x = min(1.0, max(0.0, x))
        y = min(1.0, max(0.0, y))
        return round(x * (width - 1)), round(y * (height - 1))

    def move_to(self, x: float, y: float) -> bool:
        """
        Move mouse to a normalized position.

        Args:
            x: X coordinate in [0, 1]
            y: Y coordinate in [0, 1]

        Returns:
            True if successful
        """
        px, py = self._to_pixels(x, y)
        return self._run_xdotool("mousemove", str(px), str(py))

    def click(self, x: float, y: float, button: Button = "left", is_double: bool = False) -> bool:
        """
        Move mouse to position and click.

        Args:
            x: X coordinate in [0, 1]
            y: Y coordinate in [0, 1]
            button: "left", "middle", "right" or an xdotool button number
            is_double: Double click instead of single

        Returns:
            True if successful
        """
        if not self.move_to(x, y):
            return False
        if is_double:
            return self._run_xdotool(
                "click", "--repeat", "2", "--delay", "100", button_number(button)
            )
        return self._run_xdotool("click", button_number(button))

    def button_down(self, button: Button = "left") -> bool:
        """Press mouse button down."""
        return self._run_xdotool("mousedown", button_number(button))

    def button_up(self, button: Button = "left") -> bool:
        """Release mouse button."""
        return self._run_xdotool("mouseup", button_number(button))

    def scroll(self, dx: float, dy: float) -> bool:
        """
        Scroll mouse wheel.

        Positive ``dy`` scrolls down, positive ``dx`` scrolls right. The
        magnitude is the number of wheel clicks, capped at MAX_SCROLL_CLICKS.
        """
        ok = True
        for delta, negative, positive in ((dy, "4", "5"), (dx, "6", "7")):
            if not delta:
                continue
            clicks = min(MAX_SCROLL_CLICKS, max(1, round(abs(delta))))
            button = negative if delta < 0 else positive
            ok = self._run_xdotool("click", "--repeat", str(clicks), button) and ok
        return ok

    def type_text(self, text: str) -> bool:
        """
        Type text using keyboard.

        Args:
            text: Text to type

        Returns:
            True if successful
        """
        if not text:
            return True

        # Use xdotool type with delay for reliability
        return self._run_xdotool("type", "--delay", "12", "--", text)

    def key_tap(self, key: str, modifiers: Iterable[str] = ()) -> bool:
        """
        Press a key, optionally with modifiers held.

        Args:
            key: Web key name (e.g., "Enter", "a", "ArrowUp")
            modifiers: Modifier names such as "control", "shift", "alt"

        Returns:
            True if successful
        """
        combo = "+".join([*(translate_modifier(m) for m in modifiers), translate_key(key)])
        return self._run_xdotool("key", "--", combo)


def button_number(button: Button) -> str:
    """Map a button name or number to the xdotool button number."""
    if isinstance(button, int) and not isinstance(button, bool):
        return str(button)
    return str(BUTTONS.get(str(button).lower(), 1))


# Key name mapping from web key codes to xdotool key names
KEY_MAP = {
    "Enter": "Return",
    "enter": "Return",
    "Backspace": "BackSpace",
    "backspace": "BackSpace",
    "Tab": "Tab",
    "tab": "Tab",
    "Escape": "Escape",
    "escape": "Escape",
    "Delete": "Delete",
    "delete": "Delete",
    "ArrowUp": "Up",
    "ArrowDown": "Down",
    "ArrowLeft": "Left",
    "ArrowRight": "Right",
    "up": "Up",
    "down": "Down",
    "left": "Left",
    "right": "Right",
    "Home": "Home",
    "End": "End",
    "PageUp": "Page_Up",
    "PageDown": "Page_Down",
    "Insert": "Insert",
    "Control": "ctrl",
    "Alt": "alt",
    "Shift": "shift",
    "Meta": "super",
    " ": "space",
    "space": "space",
}

MODIFIER_MAP = {
    "control": "ctrl",
    "ctrl": "ctrl",
    "shift": "shift",
    "alt": "alt",
    "command": "super",
    "meta": "super",
    "super": "super",
}


def translate_key(web_key: str) -> str:
    """Translate web key name to xdotool key name."""
    return KEY_MAP.get(web_key, web_key)


def translate_modifier(modifier: str) -> str:
    """Translate a modifier name to xdotool's spelling."""
    return MODIFIER_MAP.get(modifier.lower(), modifier.lower())
