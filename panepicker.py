#!/usr/bin/env python3
import curses
import functools
import logging
import math
import os
import subprocess
import sys
import termios
import time
import tty
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from typing import Dict, List, Optional, Union

# Hard cap on interactive rounds; the 17th unmatched key aborts the selection.
MAX_ROUNDS = 16

CANCEL = "\x1b"
INTERRUPT = "\x03"

BORDERS = {
    "none": None,
    "single": "┌┐└┘─│",
    "double": "╔╗╚╝═║",
    "rounded": "╭╮╰╯─│",
    "solid": "      ",
}


class InvalidConfig(ValueError):
    """Raised when the merged configuration cannot be used."""


class InvalidAlphabet(InvalidConfig):
    """Raised when the label characters are empty or repeat."""


@functools.lru_cache(maxsize=1)
def _get_all_tmux_options() -> dict:
    """Read every global tmux option with a single subprocess call."""
    try:
        result = subprocess.run(
            ["tmux", "show-options", "-g"], capture_output=True, text=True, check=False
        )
    except OSError:
        return {}
    options = {}
    for line in result.stdout.splitlines():
        key, sep, value = line.partition(" ")
        if sep:
            options[key] = value.strip('"')
    return options


def get_tmux_option(option: str, default: Optional[str]) -> Optional[str]:
    """Get tmux option value, falling back to default if not set."""
    return _get_all_tmux_options().get(option, default)


@dataclass(frozen=True)
class Config:
    """Configuration for panepicker."""

    chars: str = field(default="abcdefg", metadata={"opt": "@panepicker-chars"})
    background_hl: str = field(
        default="Normal", metadata={"opt": "@panepicker-background-hl"}
    )
    text_hl: str = field(default="Bold", metadata={"opt": "@panepicker-text-hl"})
    border_style: str = field(
        default="single", metadata={"opt": "@panepicker-border-style"}
    )
    float_width: int = field(default=11, metadata={"opt": "@panepicker-float-width"})
    float_height: int = field(default=5, metadata={"opt": "@panepicker-float-height"})
    show_uppercase: bool = field(
        default=False, metadata={"opt": "@panepicker-show-uppercase"}
    )
    # Declared for compatibility; a single candidate is always picked directly.
    skip_if_two: bool = field(default=True, metadata={"opt": "@panepicker-skip-if-two"})
    use_curses: bool = field(default=False, metadata={"opt": "@panepicker-use-curses"})

    def validate(self):
        check_alphabet(self.chars)
        for name in ("float_width", "float_height"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise InvalidConfig(f"{name} must be a positive integer, got {value!r}")
        if self.border_style not in BORDERS:
            raise InvalidConfig(
                f"Unknown border_style {self.border_style!r}, "
                f"expected one of: {', '.join(BORDERS)}"
            )

    @classmethod
    def from_tmux(cls) -> "Config":
        """Load configuration from tmux options."""
        overrides = {}
        for f in fields(cls):
            raw = get_tmux_option(f.metadata["opt"], None)
            if raw is None:
                continue
            if f.type is bool:
                overrides[f.name] = raw.lower() == "true"
            elif f.type is int:
                try:
                    overrides[f.name] = int(raw)
                except ValueError:
                    raise InvalidConfig(
                        f"{f.metadata['opt']} must be an integer, got {raw!r}"
                    ) from None
            else:
                overrides[f.name] = raw
        return setup(overrides)


def setup(overrides: Optional[dict] = None, base: Optional[Config] = None) -> Config:
    """Merge ``overrides`` onto the defaults (or ``base``) and validate.

    The last value given for a key wins. Unknown keys and unusable values
    raise InvalidConfig; the returned Config is immutable and is what
    ``pick`` expects to be handed.
    """
    overrides = dict(overrides or {})
    known = {f.name for f in fields(Config)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise InvalidConfig(f"Unknown option(s): {', '.join(unknown)}")
    config = replace(base or Config(), **overrides)
    config.validate()
    return config


def check_alphabet(chars: str):
    if not chars:
        raise InvalidAlphabet("chars must contain at least one character")
    if len(set(chars)) != len(chars):
        raise InvalidAlphabet(f"chars must not repeat characters: {chars!r}")


def setup_logging(use_curses: bool = False):
    """Initialize logging configuration based on tmux options"""
    debug = get_tmux_option("@panepicker-debug", "false").lower() == "true"
    perf = get_tmux_option("@panepicker-perf", "false").lower() == "true"

    if not (debug or perf):
        logging.getLogger().disabled = True
        return

    logging.basicConfig(
        filename=os.path.expanduser("~/panepicker.log"),
        level=logging.DEBUG,
        format=f"%(asctime)s - %(levelname)s - {'CURSES' if use_curses else 'ANSI'}"
        " - %(message)s",
    )


def perf_timer(func_name=None):
    """Log how long the wrapped call took when @panepicker-perf is on"""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            if get_tmux_option("@panepicker-perf", "false").lower() != "true":
                return func(*args, **kwargs)

            start_time = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                elapsed = time.perf_counter() - start_time
                name = func_name or func.__name__
                logging.info(f"{name} took: {elapsed:.3f} seconds")

        return wrapper

    return decorator


# ============================================================================
# Labels
# ============================================================================


def label_for(ordinal: int, chars: str) -> str:
    """Label of the pane at ``ordinal``: one character repeated per lap.

    ``chars[ordinal % len(chars)]`` is repeated ``ordinal // len(chars) + 1``
    times, so labels only grow once every character has been used.
    """
    quotient, remainder = divmod(ordinal, len(chars))
    return chars[remainder] * (quotient + 1)


def assign_labels(
    panes: List["PaneInfo"], active: Optional["PaneInfo"], chars: str
) -> Dict[str, "PaneInfo"]:
    """Map a label to every pane except the active one.

    Labels come from the pane position number, so a pane keeps the same
    label regardless of which pane is active.
    """
    check_alphabet(chars)
    current = active.number if active is not None else None

    mappings = {}
    for pane in panes:
        if pane.number == current:
            continue
        mappings[label_for(pane.number - 1, chars)] = pane
    return mappings


# ============================================================================
# Selection state machine
# ============================================================================


@dataclass(frozen=True)
class AwaitingInput:
    candidates: Dict[str, "PaneInfo"]
    position: int = 0
    round: int = 0


@dataclass(frozen=True)
class Resolved:
    pane: "PaneInfo"


@dataclass(frozen=True)
class Cancelled:
    pass


@dataclass(frozen=True)
class Aborted:
    """No pane was chosen within MAX_ROUNDS keys."""

    rounds: int


Unresolved = Aborted

SelectionState = Union[AwaitingInput, Resolved, Cancelled, Aborted]


def start(candidates: Dict[str, "PaneInfo"]) -> SelectionState:
    """Initial state for a labelled set of panes.

    Nothing to choose from cancels, and a lone candidate is resolved without
    asking for input.
    """
    if not candidates:
        return Cancelled()
    if len(candidates) == 1:
        return Resolved(next(iter(candidates.values())))
    return AwaitingInput(dict(candidates))


def step(state: AwaitingInput, key: Optional[str]) -> SelectionState:
    """Consume one key and return the next state.

    A candidate matches when the unconsumed rest of its label is a prefix
    of ``key``. The first matched label with a single character left wins,
    shortest label first, then alphabetical.
    """
    if key is None or key == CANCEL:
        return Cancelled()

    matched = [
        label
        for label in sorted(state.candidates, key=lambda label: (len(label), label))
        if key.startswith(label[state.position :])
    ]
    rounds = state.round + 1

    if not matched:
        if rounds > MAX_ROUNDS:
            return Aborted(rounds)
        return replace(state, round=rounds)

    for label in matched:
        if len(label) - state.position == 1:
            return Resolved(state.candidates[label])

    if rounds > MAX_ROUNDS:
        return Aborted(rounds)
    return AwaitingInput(
        {label: state.candidates[label] for label in matched},
        state.position + 1,
        rounds,
    )


# ============================================================================
# Collaborators
# ============================================================================


class PaneSource(ABC):
    @abstractmethod
    def list_selectable_panes(self) -> List["PaneInfo"]:
        """Panes that can be picked, in position order"""
        pass

    @abstractmethod
    def active_pane(self) -> Optional["PaneInfo"]:
        """The pane that currently has focus"""
        pass

    @abstractmethod
    def activate(self, pane: "PaneInfo") -> bool:
        """Give focus to pane, returning whether it worked"""
        pass


class Renderer(ABC):
    @abstractmethod
    def show(self, mapping: Dict[str, "PaneInfo"], config: Config):
        """Draw the labels and return a handle for hide()"""
        pass

    @abstractmethod
    def hide(self, overlay):
        """Remove everything show() drew"""
        pass


class InputSource(ABC):
    @abstractmethod
    def next_key(self) -> Optional[str]:
        """Block for one key; CANCEL to abort, None at end of input"""
        pass


@perf_timer("Selection")
def run_selection(
    candidates: Dict[str, "PaneInfo"],
    renderer: Renderer,
    input_source: InputSource,
    config: Config,
) -> SelectionState:
    state = start(candidates)
    if not isinstance(state, AwaitingInput):
        logging.debug(f"Selection short-circuited: {state}")
        return state

    overlay = renderer.show(candidates, config)
    try:
        while isinstance(state, AwaitingInput):
            try:
                key = input_source.next_key()
            except Exception as e:
                logging.error(f"Reading input failed: {str(e)}", exc_info=True)
                key = None
            state = step(state, key)
            logging.debug(f"Key {key!r} -> {state}")
    finally:
        renderer.hide(overlay)
    return state


def pick(
    config: Config,
    source: PaneSource,
    renderer: Renderer,
    input_source: InputSource,
) -> None:
    """Let the user choose a pane and focus it."""
    panes = source.list_selectable_panes()
    active = source.active_pane()
    candidates = assign_labels(panes, active, config.chars)
    logging.debug(f"Labels: {sorted(candidates)}")

    state = run_selection(candidates, renderer, input_source, config)
    if isinstance(state, Resolved):
        source.activate(state.pane)
    elif isinstance(state, Aborted):
        logging.warning(f"No pane selected after {state.rounds} keys")


# ============================================================================
# Screen
# ============================================================================


class Screen(ABC):
    A_NORMAL = 0
    A_DIM = 1
    A_BOLD = 2
    A_REVERSE = 3
    A_UNDERLINE = 4

    HIGHLIGHTS = {
        "Normal": A_NORMAL,
        "Bold": A_BOLD,
        "Dim": A_DIM,
        "Comment": A_DIM,
        "Reverse": A_REVERSE,
        "Visual": A_REVERSE,
        "Underlined": A_UNDERLINE,
    }

    def highlight(self, name: str) -> int:
        """Generic attribute for a highlight group name"""
        if name not in self.HIGHLIGHTS:
            logging.debug(f"Unknown highlight {name!r}, using Normal")
        return self.HIGHLIGHTS.get(name, self.A_NORMAL)

    @abstractmethod
    def transform_attr(self, attr):
        """Turn a generic attribute into the backend's own"""
        pass

    @abstractmethod
    def init(self):
        pass

    @abstractmethod
    def cleanup(self):
        pass

    @abstractmethod
    def addstr(self, y: int, x: int, text: str, attr=0):
        pass

    @abstractmethod
    def refresh(self):
        pass

    @abstractmethod
    def clear(self):
        pass


class AnsiSequence(Screen):
    ESC = "\033"
    CLEAR = f"{ESC}[2J"
    HIDE_CURSOR = f"{ESC}[?25l"
    SHOW_CURSOR = f"{ESC}[?25h"
    RESET = f"{ESC}[0m"

    CODES = {
        Screen.A_DIM: f"{ESC}[2m",
        Screen.A_BOLD: f"{ESC}[1m",
        Screen.A_REVERSE: f"{ESC}[7m",
        Screen.A_UNDERLINE: f"{ESC}[4m",
    }

    def init(self):
        sys.stdout.write(self.HIDE_CURSOR)
        sys.stdout.flush()

    def cleanup(self):
        sys.stdout.write(self.SHOW_CURSOR + self.RESET)
        sys.stdout.flush()

    def transform_attr(self, attr):
        return self.CODES.get(attr, "")

    def addstr(self, y: int, x: int, text: str, attr=0):
        move = f"{self.ESC}[{y + 1};{x + 1}H"
        code = self.transform_attr(attr)
        if code:
            sys.stdout.write(f"{move}{code}{text}{self.RESET}")
        else:
            sys.stdout.write(f"{move}{text}")

    def refresh(self):
        sys.stdout.flush()

    def clear(self):
        sys.stdout.write(self.CLEAR)


class Curses(Screen):
    def __init__(self):
        self.stdscr = None

    def init(self):
        self.stdscr = curses.initscr()
        curses.noecho()
        curses.cbreak()
        self.stdscr.keypad(True)

    def cleanup(self):
        if not self.stdscr:
            return
        self.stdscr.keypad(False)
        curses.nocbreak()
        curses.echo()
        curses.endwin()

    def transform_attr(self, attr):
        return {
            self.A_DIM: curses.A_DIM,
            self.A_BOLD: curses.A_BOLD,
            self.A_REVERSE: curses.A_REVERSE,
            self.A_UNDERLINE: curses.A_UNDERLINE,
        }.get(attr, curses.A_NORMAL)

    def addstr(self, y: int, x: int, text: str, attr=0):
        try:
            self.stdscr.addstr(y, x, text, self.transform_attr(attr))
        except curses.error:
            # Writing the bottom-right cell raises after drawing
            pass

    def refresh(self):
        self.stdscr.refresh()

    def clear(self):
        self.stdscr.clear()


@functools.lru_cache(maxsize=1024)
def get_char_width(char: str) -> int:
    """Cells taken by one character"""
    return 2 if unicodedata.east_asian_width(char) in "WF" else 1


def get_string_width(s: str) -> int:
    return sum(map(get_char_width, s))


def fit_to_width(line: str, width: int) -> str:
    """Cut or pad line so it fills exactly width cells"""
    out = []
    used = 0
    for char in line:
        char_width = get_char_width(char)
        if used + char_width > width:
            break
        out.append(char)
        used += char_width
    return "".join(out) + " " * (width - used)


# ============================================================================
# tmux
# ============================================================================


def sh(cmd: list) -> str:
    """Execute shell command with optional logging"""
    try:
        result = subprocess.run(
            cmd, shell=False, text=True, capture_output=True, check=True
        ).stdout

        logging.debug(f"Command: {cmd}")
        logging.debug(f"Result: {result}")
        return result
    except subprocess.CalledProcessError as e:
        logging.error(f"Error executing {cmd}: {str(e)}")
        raise


class PaneInfo:
    __slots__ = (
        "pane_id",
        "window_id",
        "number",
        "active",
        "start_y",
        "height",
        "start_x",
        "width",
        "lines",
    )

    def __init__(
        self, pane_id, number, active, start_y, height, start_x, width, window_id=""
    ):
        self.pane_id = pane_id
        self.window_id = window_id
        self.number = number
        self.active = active
        self.start_y = start_y
        self.height = height
        self.start_x = start_x
        self.width = width
        self.lines = []

    def __repr__(self):
        return f"PaneInfo({self.pane_id!r}, number={self.number})"


@perf_timer("Listing panes")
def list_tmux_panes(target: Optional[str] = None) -> List[PaneInfo]:
    """Panes of the target window that can be picked, in index order"""
    format_str = (
        "#{pane_id},#{window_id},#{window_zoomed_flag},#{pane_active},"
        "#{pane_top},#{pane_height},#{pane_left},#{pane_width}"
    )
    cmd = ["tmux", "list-panes", "-F", format_str]
    if target:
        cmd.extend(["-t", target])

    overlay_pane = os.environ.get("TMUX_PANE")
    panes = []
    for number, line in enumerate(sh(cmd).strip().splitlines(), start=1):
        pane_id, window_id, zoomed, active, top, height, left, width = line.split(",")

        # A zoomed window only shows its active pane
        if zoomed == "1" and active != "1":
            continue
        if pane_id == overlay_pane:
            continue

        panes.append(
            PaneInfo(
                pane_id=pane_id,
                number=number,
                active=active == "1",
                start_y=int(top),
                height=int(height),
                start_x=int(left),
                width=int(width),
                window_id=window_id,
            )
        )
    return panes


def tmux_capture_pane(pane: PaneInfo) -> List[str]:
    if not pane.height or not pane.width:
        return []
    return sh(["tmux", "capture-pane", "-p", "-t", pane.pane_id])[:-1].split("\n")[
        : pane.height
    ]


def get_terminal_size():
    """Get terminal size from tmux"""
    output = sh(["tmux", "display-message", "-p", "#{client_width},#{client_height}"])
    width, height = map(int, output.strip().split(","))
    return width, height - 1  # status line


def get_current_window_id() -> str:
    """Return the window_id for the pane running this script"""
    cmd = ["tmux", "display-message", "-p"]
    pane_target = os.environ.get("TMUX_PANE")
    if pane_target:
        cmd.extend(["-t", pane_target])
    cmd.append("#{window_id}")
    return sh(cmd).strip()


class TmuxPanes(PaneSource):
    """Panes of one tmux window, listed once per pick"""

    def __init__(self, target: Optional[str] = None):
        self.target = target
        self._panes = None

    def _load(self) -> List[PaneInfo]:
        if self._panes is None:
            self._panes = list_tmux_panes(self.target)
        return self._panes

    def list_selectable_panes(self) -> List[PaneInfo]:
        return list(self._load())

    def active_pane(self) -> Optional[PaneInfo]:
        return next((pane for pane in self._load() if pane.active), None)

    def activate(self, pane: PaneInfo) -> bool:
        try:
            sh(["tmux", "select-pane", "-t", pane.pane_id])
        except subprocess.CalledProcessError:
            logging.warning(f"Pane {pane.pane_id} is gone, focus unchanged")
            return False
        return True


@dataclass
class LabelBox:
    label: str
    text: str
    y: int
    x: int
    width: int
    height: int
    label_row: int
    label_col: int


@dataclass
class Overlay:
    window_id: str
    boxes: List[LabelBox] = field(default_factory=list)


def layout_label_box(label: str, pane: PaneInfo, config: Config) -> LabelBox:
    """Place the label box roughly in the middle of pane"""
    float_width = config.float_width + len(label) - 1
    row = max(0, math.floor(pane.height / 2 - 1))
    col = max(0, math.floor(pane.width / 2 - float_width))

    return LabelBox(
        label=label,
        text=label.upper() if config.show_uppercase else label,
        y=pane.start_y + row,
        x=pane.start_x + col,
        width=len(label) + float_width - 1,
        height=config.float_height,
        label_row=math.ceil(config.float_height / 2) - 1,
        label_col=math.ceil(float_width / 2) - 1,
    )


def draw_label_box(screen: Screen, box: LabelBox, config: Config, max_y: int):
    background = screen.highlight(config.background_hl)
    border = BORDERS[config.border_style]
    inset = 1 if border else 0

    def put(y, x, text, attr):
        if 0 <= y < max_y:
            screen.addstr(y, x, text, attr)

    if border:
        top_left, top_right, bottom_left, bottom_right, horizontal, vertical = border
        put(box.y, box.x, top_left + horizontal * box.width + top_right, background)
        for y in range(box.y + 1, box.y + 1 + box.height):
            put(y, box.x, vertical, background)
            put(y, box.x + box.width + 1, vertical, background)
        bottom_line = bottom_left + horizontal * box.width + bottom_right
        put(box.y + box.height + 1, box.x, bottom_line, background)

    for row in range(box.height):
        put(box.y + inset + row, box.x + inset, " " * box.width, background)
    put(
        box.y + inset + box.label_row,
        box.x + inset + box.label_col,
        box.text,
        screen.highlight(config.text_hl),
    )


def draw_pane_contents(screen: Screen, panes: List[PaneInfo], max_y: int):
    """Redraw captured pane text with the separators between panes"""
    right_edge = max((pane.start_x + pane.width for pane in panes), default=0)
    for pane in panes:
        visible = min(pane.height, max_y - pane.start_y)
        for y in range(visible):
            line = pane.lines[y] if y < len(pane.lines) else ""
            y_pos = pane.start_y + y
            screen.addstr(y_pos, pane.start_x, fit_to_width(line, pane.width))
            if pane.start_x + pane.width < right_edge:
                screen.addstr(y_pos, pane.start_x + pane.width, "│", screen.A_DIM)
        bottom = pane.start_y + pane.height
        if bottom < max_y:
            screen.addstr(bottom, pane.start_x, "─" * pane.width, screen.A_DIM)


class OverlayRenderer(Renderer):
    """Draws labels on the overlay window and switches the client to it"""

    def __init__(self, screen: Screen, source: PaneSource):
        self.screen = screen
        self.source = source

    @perf_timer("Drawing labels")
    def show(self, mapping: Dict[str, PaneInfo], config: Config) -> Overlay:
        panes = self.source.list_selectable_panes()
        for pane in panes:
            pane.lines = tmux_capture_pane(pane)
        _, terminal_height = get_terminal_size()

        boxes = [
            layout_label_box(label, pane, config)
            for label, pane in sorted(mapping.items())
        ]
        self.screen.clear()
        draw_pane_contents(self.screen, panes, terminal_height)
        for box in boxes:
            draw_label_box(self.screen, box, config, terminal_height)
        self.screen.refresh()

        window_id = next((pane.window_id for pane in panes), "")
        sh(["tmux", "select-window", "-t", get_current_window_id()])
        return Overlay(window_id=window_id, boxes=boxes)

    def hide(self, overlay: Overlay):
        self.screen.clear()
        self.screen.refresh()
        if overlay.window_id:
            sh(["tmux", "select-window", "-t", overlay.window_id])


def getch(stream=None) -> str:
    """Read one character from the raw terminal, or from stream if given"""
    if stream is not None:
        return stream.read(1)

    fd = sys.stdin.fileno()
    old_settings = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        return sys.stdin.read(1)
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)


class KeyboardInput(InputSource):
    def __init__(self, stream=None):
        self.stream = stream

    def next_key(self) -> Optional[str]:
        try:
            ch = getch(self.stream)
        except (OSError, termios.error) as e:
            logging.error(f"Cannot read key: {str(e)}")
            return None
        if not ch:
            return None
        if ch in (CANCEL, INTERRUPT):
            logging.info("Operation cancelled by user")
            return CANCEL
        return ch


def main(screen: Screen, config: Config):
    setup_logging(config.use_curses)
    source = TmuxPanes(sys.argv[1] if len(sys.argv) > 1 else None)
    pick(config, source, OverlayRenderer(screen, source), KeyboardInput())


if __name__ == "__main__":
    try:
        config = Config.from_tmux()
    except InvalidConfig as e:
        subprocess.run(["tmux", "display-message", f"panepicker: {e}"], check=False)
        sys.exit(1)

    screen: Screen = Curses() if config.use_curses else AnsiSequence()
    screen.init()
    try:
        main(screen, config)
    except KeyboardInterrupt:
        logging.info("Operation cancelled by user")
    except Exception as e:
        logging.error(f"Error occurred: {str(e)}", exc_info=True)
    finally:
        screen.cleanup()
