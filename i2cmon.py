"""i2cmon -- I2C HID Interrupt Monitor.

Maps I2C bus controllers to the HID devices (touchpads, touchscreens,
styluses) attached to them, then samples /proc/interrupts to show live
per-source interrupt rates in a terminal dashboard or as plain text.
"""

from __future__ import annotations

import argparse
import enum
import logging
import math
import sys
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, ClassVar, Iterable, Mapping, TextIO

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.logging import TextualHandler
from textual.message import Message
from textual.widget import Widget
from textual.widgets import Footer, Header, Static

logger = logging.getLogger("i2cmon")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PROC_INTERRUPTS = Path("/proc/interrupts")
I2C_HID_DRIVER = Path("/sys/bus/i2c/drivers/i2c_hid_acpi")
HID_DEVICES = Path("/sys/bus/hid/devices")

I2C_DEVICE_PREFIX = "i2c-"
I2C_HID_BUS_PREFIX = "0018:"  # BUS_I2C in the HID bus numbering
CONTROLLER_PREFIX = "i2c_designware"
GPIO_MARKERS = ("intel-gpio", "pinctrl")
PIXART_VENDOR_ID = 0x093A

DEFAULT_INTERVAL_MS = 1000
DEFAULT_THRESHOLD = 100.0
MAX_POINTS = 300  # Scrolling window per source
X_WINDOW_S = 60.0
Y_HEADROOM = 1.1
Y_MIN_SCALE = 10.0
TARGET_Y_LABELS = 5
GUTTER_WIDTH = 10

TOTAL_COLOR = "#ffffff"
HIGH_BACKGROUND = "#444444"

NO_CONTROLLERS_TEXT = (
    "No I2C controllers with HID devices found.\n"
    "\n"
    "This may mean:\n"
    "  - No I2C HID device is present\n"
    "  - The touchpad uses a different driver (PS/2, USB)\n"
    "  - The I2C controller uses a different driver\n"
)

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class I2cMonError(Exception):
    """Base class for errors reported to the user."""


class CounterReadError(I2cMonError):
    """The interrupt counter table could not be read."""


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InterruptSource:
    """One row of /proc/interrupts."""

    irq: str
    count: int


@dataclass(frozen=True)
class HidDevice:
    """An I2C HID device discovered from sysfs."""

    acpi_name: str
    vendor_id: int = 0
    product_id: int = 0
    device_type: str = "Unknown"
    driver: str = ""
    bus_num: int = 0
    controller: str = ""
    gpio_irq: str | None = None
    input_names: tuple[str, ...] = ()


@dataclass
class I2cController:
    name: str
    bus_num: int
    irq: str | None = None
    hid_devices: list[HidDevice] = field(default_factory=list)


@dataclass(frozen=True)
class InterruptSourceInfo:
    """A controller or device that owns an interrupt line, ready for display."""

    irq: str
    name: str
    device_type: str
    is_controller: bool
    parent_controller: str | None = None
    indent_level: int = 0


@dataclass
class Topology:
    """Controllers (sorted by bus number) plus the IRQ maps they were built from."""

    controllers: list[I2cController] = field(default_factory=list)
    gpio_irqs: dict[str, str] = field(default_factory=dict)
    controller_irqs: dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.controllers

    def all_sources(self) -> list[InterruptSourceInfo]:
        """Flatten to controllers followed by their devices.

        Entries without a known interrupt line are left out since their
        rate can never be sampled.
        """
        sources: list[InterruptSourceInfo] = []
        for controller in self.controllers:
            if controller.irq is not None:
                summary = ""
                if controller.hid_devices:
                    types = ", ".join(d.device_type for d in controller.hid_devices)
                    summary = f" ({types})"
                sources.append(
                    InterruptSourceInfo(
                        irq=controller.irq,
                        name=f"{controller.name}{summary}",
                        device_type="I2C Controller",
                        is_controller=True,
                    )
                )
            for device in controller.hid_devices:
                if device.gpio_irq is None:
                    continue
                sources.append(
                    InterruptSourceInfo(
                        irq=device.gpio_irq,
                        name=device.acpi_name,
                        device_type=device.device_type,
                        is_controller=False,
                        parent_controller=controller.name,
                        indent_level=1,
                    )
                )
        return sources


class SourceRole(enum.Enum):
    CONTROLLER = "controller"
    DEVICE = "device"

    @classmethod
    def of(cls, info: InterruptSourceInfo) -> SourceRole:
        return cls.CONTROLLER if info.is_controller else cls.DEVICE


# Controllers get the darker set, HID devices the brighter variants.
PALETTE: dict[SourceRole, tuple[str, ...]] = {
    SourceRole.CONTROLLER: ("#5f87ff", "#d75fd7", "#ff5f5f", "#ffd75f"),
    SourceRole.DEVICE: ("#5fd7ff", "#ff87ff", "#ff8787", "#ffff87"),
}


@dataclass
class RateSeries:
    """Scrolling window of (elapsed_s, rate) samples with running statistics."""

    MAXLEN: ClassVar[int] = MAX_POINTS

    data: deque[tuple[float, float]] = field(
        default_factory=lambda: deque(maxlen=RateSeries.MAXLEN)
    )
    latest: float = 0.0
    rate_sum: float = 0.0
    samples: int = 0
    rate_min: float = math.inf
    rate_max: float = -math.inf

    @property
    def avg(self) -> float:
        return self.rate_sum / self.samples if self.samples else 0.0

    @property
    def peak(self) -> float:
        return self.rate_max if self.samples else 0.0

    def record(self, elapsed_s: float, rate: float) -> None:
        self.data.append((elapsed_s, rate))
        self.latest = rate
        self.rate_sum += rate
        self.samples += 1
        self.rate_min = min(self.rate_min, rate)
        self.rate_max = max(self.rate_max, rate)


@dataclass
class SourceHistory:
    """Accumulated rates for one interrupt source."""

    info: InterruptSourceInfo
    color_idx: int
    prev_count: int
    series: RateSeries = field(default_factory=RateSeries)
    visible: bool = True

    @property
    def irq(self) -> str:
        return self.info.irq

    @property
    def name(self) -> str:
        return self.info.name

    @property
    def role(self) -> SourceRole:
        return SourceRole.of(self.info)

    @property
    def color(self) -> str:
        colors = PALETTE[self.role]
        return colors[self.color_idx % len(colors)]

    @property
    def type_label(self) -> str:
        return "Controller" if self.info.is_controller else self.info.device_type

    @property
    def display_name(self) -> str:
        if self.info.is_controller:
            return self.info.name
        return "  " * self.info.indent_level + f"└─ {self.info.name}"

    def update(self, elapsed_s: float, count: int, interval_s: float) -> float:
        rate = irq_rate(self.prev_count, count, interval_s)
        self.series.record(elapsed_s, rate)
        self.prev_count = count
        return rate

    def mark_missing(self) -> None:
        # Line vanished from the table: zero for this tick, baseline kept.
        self.series.latest = 0.0


# ---------------------------------------------------------------------------
# Interrupt counter source
# ---------------------------------------------------------------------------


class InterruptCounter:
    """Reads per-IRQ totals (summed over CPUs) from /proc/interrupts."""

    def __init__(self, path: Path = PROC_INTERRUPTS) -> None:
        self.path = path

    @staticmethod
    def parse_interrupt_line(line: str, cpu_count: int) -> InterruptSource | None:
        """Parse one row: "IRQ:  <count per CPU>  <annotation>".

        Only the leading integer columns (at most one per CPU) are summed,
        so numbers inside the annotation are never counted.
        """
        parts = line.split()
        if not parts:
            return None
        irq = parts[0].rstrip(":")
        total = 0
        for part in parts[1 : cpu_count + 1]:
            try:
                total += int(part)
            except ValueError:
                break
        return InterruptSource(irq=irq, count=total)

    @classmethod
    def parse_interrupts(cls, text: str) -> list[InterruptSource]:
        lines = text.splitlines()
        if not lines:
            raise CounterReadError("empty /proc/interrupts")
        cpu_count = len(lines[0].split())
        sources = []
        for line in lines[1:]:
            source = cls.parse_interrupt_line(line, cpu_count)
            if source is not None:
                sources.append(source)
        return sources

    def read_text(self) -> str:
        try:
            return self.path.read_text()
        except OSError as exc:
            raise CounterReadError(f"failed to read {self.path}: {exc}") from exc

    def read(self) -> list[InterruptSource]:
        return self.parse_interrupts(self.read_text())

    def snapshot(self) -> dict[str, int]:
        return {source.irq: source.count for source in self.read()}


# ---------------------------------------------------------------------------
# Topology discovery
# ---------------------------------------------------------------------------


class TopologyDiscovery:
    """Builds the controller -> HID device -> IRQ hierarchy.

    Combines three sources: the annotation column of /proc/interrupts,
    the devices bound to the i2c_hid_acpi driver, and the HID bus devices.
    Missing sysfs directories give an empty topology, not an error.
    """

    def __init__(
        self,
        interrupts_path: Path = PROC_INTERRUPTS,
        hid_driver_path: Path = I2C_HID_DRIVER,
        hid_devices_path: Path = HID_DEVICES,
    ) -> None:
        self.counter = InterruptCounter(interrupts_path)
        self.hid_driver_path = hid_driver_path
        self.hid_devices_path = hid_devices_path

    @staticmethod
    def _read_file(path: Path, default: str = "") -> str:
        try:
            return path.read_text().strip()
        except OSError:
            logger.debug("cannot read %s", path)
            return default

    @staticmethod
    def _list_dir(path: Path) -> list[Path]:
        try:
            return sorted(path.iterdir())
        except OSError:
            logger.debug("cannot list %s", path)
            return []

    @staticmethod
    def _read_link(path: Path) -> str:
        try:
            return str(path.readlink())
        except OSError:
            logger.debug("%s is not a readable symlink", path)
            return ""

    @staticmethod
    def extract_acpi_name(line: str) -> str | None:
        """Find an ACPI device name such as "PIXA3854:00" at the end of a row."""
        for part in reversed(line.split()):
            if (
                ":" in part
                and part[0].isascii()
                and part[0].isupper()
                and "IR-" not in part
                and "PCI-" not in part
            ):
                return part
        return None

    @classmethod
    def parse_irq_annotations(
        cls, text: str
    ) -> tuple[dict[str, str], dict[str, str]]:
        """Return (acpi_name -> GPIO irq, controller name -> controller irq).

        GPIO rows look like "203: ... intel-gpio 18 PIXA3854:00".  Controller
        rows may list several instances sharing a line, e.g.
        "27: ... idma64.0, i2c_designware.0".
        """
        gpio_irqs: dict[str, str] = {}
        controller_irqs: dict[str, str] = {}
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            irq = line.split(":", 1)[0].strip()

            if any(marker in line for marker in GPIO_MARKERS):
                acpi_name = cls.extract_acpi_name(line)
                if acpi_name is not None:
                    gpio_irqs[acpi_name] = irq
                else:
                    logger.debug("no ACPI name in GPIO row %r", line)

            if CONTROLLER_PREFIX in line:
                for part in line.replace(",", " ").split():
                    if CONTROLLER_PREFIX in part:
                        controller_irqs[part] = irq
        return gpio_irqs, controller_irqs

    @staticmethod
    def extract_controller_name(path: str) -> str:
        for part in path.split("/"):
            if part.startswith(CONTROLLER_PREFIX + "."):
                return part
        return "unknown"

    @staticmethod
    def extract_bus_num(path: str) -> int:
        for part in path.split("/"):
            if part.startswith(I2C_DEVICE_PREFIX):
                try:
                    return int(part[len(I2C_DEVICE_PREFIX):])
                except ValueError:
                    continue
        return 0

    @staticmethod
    def parse_hid_ids(name: str) -> tuple[int, int]:
        """Parse vendor/product from a HID bus name "0018:VVVV:PPPP.NNNN"."""
        parts = name.split(":")
        if len(parts) < 3:
            return 0, 0

        def _hex(value: str) -> int:
            try:
                return int(value, 16)
            except ValueError:
                logger.debug("bad hex id %r in %s", value, name)
                return 0

        return _hex(parts[1]), _hex(parts[2].split(".")[0])

    @staticmethod
    def parse_uevent_driver(text: str) -> str:
        driver = ""
        for line in text.splitlines():
            if line.startswith("DRIVER="):
                driver = line[len("DRIVER="):].strip()
        return driver

    @staticmethod
    def classify_device(
        driver: str, vendor_id: int, input_names: Iterable[str]
    ) -> str:
        """Human-readable device type.

        Input names win over driver heuristics.  A hid-multitouch device is
        assumed to be a touchpad only when it comes from PixArt; nothing
        else (size, axes) is checked, so other touchpads show as
        touchscreens.
        """
        input_names = list(input_names)
        for name in input_names:
            lower = name.lower()
            if "touchpad" in lower:
                return "Touchpad"
            if "touchscreen" in lower:
                return "Touchscreen"
            if "stylus" in lower or "pen" in lower:
                return "Stylus"
            if "keyboard" in lower:
                return "Keyboard"

        if driver == "hid-multitouch":
            return "Touchpad" if vendor_id == PIXART_VENDOR_ID else "Touchscreen"
        if driver == "hid-sensor-hub":
            return "Sensor Hub"
        if driver == "hid-generic":
            if any("Radio" in n or "Consumer" in n for n in input_names):
                return "Keyboard/Controls"
            return "Input Device"
        return "HID Device"

    def _discover_hid_device(
        self,
        acpi_name: str,
        controller: str,
        bus_num: int,
        gpio_irq: str | None,
    ) -> HidDevice:
        vendor_id = product_id = 0
        driver = ""
        input_names: list[str] = []

        for entry in self._list_dir(self.hid_devices_path):
            if not entry.name.startswith(I2C_HID_BUS_PREFIX):
                continue
            uevent = self._read_file(entry / "uevent")
            if acpi_name not in uevent:
                continue
            vendor_id, product_id = self.parse_hid_ids(entry.name)
            driver = self.parse_uevent_driver(uevent)
            for input_dir in self._list_dir(entry / "input"):
                name = self._read_file(input_dir / "name")
                if name:
                    input_names.append(name)
            break
        else:
            logger.debug("no HID bus device matches %s", acpi_name)

        if gpio_irq is None:
            logger.debug("%s has no GPIO interrupt line", acpi_name)

        return HidDevice(
            acpi_name=acpi_name,
            vendor_id=vendor_id,
            product_id=product_id,
            device_type=self.classify_device(driver, vendor_id, input_names),
            driver=driver,
            bus_num=bus_num,
            controller=controller,
            gpio_irq=gpio_irq,
            input_names=tuple(input_names),
        )

    def discover(self) -> Topology:
        gpio_irqs, controller_irqs = self.parse_irq_annotations(
            self.counter.read_text()
        )
        controllers: dict[str, I2cController] = {}

        for entry in self._list_dir(self.hid_driver_path):
            if not entry.name.startswith(I2C_DEVICE_PREFIX):
                continue
            acpi_name = entry.name[len(I2C_DEVICE_PREFIX):]
            if not acpi_name:
                continue
            target = self._read_link(entry)
            controller_name = self.extract_controller_name(target)
            bus_num = self.extract_bus_num(target)

            device = self._discover_hid_device(
                acpi_name, controller_name, bus_num, gpio_irqs.get(acpi_name)
            )
            controller = controllers.get(controller_name)
            if controller is None:
                controller = I2cController(
                    name=controller_name,
                    bus_num=bus_num,
                    irq=controller_irqs.get(controller_name),
                )
                controllers[controller_name] = controller
            controller.hid_devices.append(device)

        topology = Topology(
            controllers=sorted(controllers.values(), key=lambda c: c.bus_num),
            gpio_irqs=gpio_irqs,
            controller_irqs=controller_irqs,
        )
        if topology.is_empty:
            logger.warning("no I2C HID devices found under %s", self.hid_driver_path)
        return topology


# ---------------------------------------------------------------------------
# Rate sampling
# ---------------------------------------------------------------------------


def irq_rate(prev_count: int, count: int, interval_s: float) -> float:
    """Interrupts per second; a counter that went backwards gives 0."""
    return max(0, count - prev_count) / interval_s


class RateSampler:
    """Turns successive counter snapshots into per-source rate series.

    Rates are always divided by the nominal interval, so a late tick
    reports the whole accumulated delta as one sample.
    """

    def __init__(
        self,
        sources: Iterable[InterruptSourceInfo],
        initial_counts: Mapping[str, int],
        interval_s: float,
        max_points: int = MAX_POINTS,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("sampling interval must be positive")
        self.interval_s = interval_s
        self.histories: list[SourceHistory] = []
        next_color = {role: 0 for role in SourceRole}
        for info in sources:
            role = SourceRole.of(info)
            self.histories.append(
                SourceHistory(
                    info=info,
                    color_idx=next_color[role],
                    prev_count=initial_counts.get(info.irq, 0),
                    series=RateSeries(deque(maxlen=max_points)),
                )
            )
            next_color[role] += 1
        self.total = RateSeries(deque(maxlen=max_points))
        self.sample_count = 0

    def sample(self, counts: Mapping[str, int], elapsed_s: float) -> float:
        """Record one tick and return the TOTAL rate for it."""
        total_rate = 0.0
        for history in self.histories:
            count = counts.get(history.irq)
            if count is None:
                history.mark_missing()
                continue
            total_rate += history.update(elapsed_s, count, self.interval_s)

        self.total.record(elapsed_s, total_rate)
        self.sample_count += 1
        return total_rate

    def high_sources(self, threshold: float) -> list[SourceHistory]:
        if threshold <= 0:
            return []
        return [h for h in self.histories if h.series.latest > threshold]


# ---------------------------------------------------------------------------
# Dashboard state
# ---------------------------------------------------------------------------


def nice_step(max_value: float, target_labels: int = TARGET_Y_LABELS) -> float:
    """Axis step of 1, 2, 5 or 10 x 10^k giving about target_labels ticks."""
    if max_value <= 0:
        return 1.0
    raw_step = max_value / target_labels
    magnitude = 10 ** math.floor(math.log10(raw_step))
    fraction = raw_step / magnitude
    if fraction <= 1:
        nice = 1
    elif fraction <= 2:
        nice = 2
    elif fraction <= 5:
        nice = 5
    else:
        nice = 10
    return nice * magnitude


def ceil_to_step(value: float, step: float) -> float:
    return math.ceil(value / step) * step


def format_rate(rate: float) -> str:
    return f"{rate:.1f}/s"


def format_axis_label(value: float) -> str:
    if value == int(value):
        return f"{value:.0f}/s"
    return f"{value:.1f}/s"


class DashboardController:
    """Selection, visibility and axis state for the live dashboard.

    Row indices 0..n-1 are the sources; index n is the TOTAL row.
    """

    def __init__(
        self,
        sampler: RateSampler,
        threshold: float = DEFAULT_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sampler = sampler
        self.threshold = threshold
        self._clock = clock
        self.start = clock()
        self.selected_idx = 0
        self.total_visible = True
        self.should_quit = False

    @property
    def histories(self) -> list[SourceHistory]:
        return self.sampler.histories

    @property
    def total(self) -> RateSeries:
        return self.sampler.total

    @property
    def selectable_count(self) -> int:
        return len(self.histories) + 1

    @property
    def total_selected(self) -> bool:
        return self.selected_idx == len(self.histories)

    def select_prev(self) -> None:
        self.selected_idx = (self.selected_idx - 1) % self.selectable_count

    def select_next(self) -> None:
        self.selected_idx = (self.selected_idx + 1) % self.selectable_count

    def toggle_visibility(self) -> None:
        if self.total_selected:
            self.total_visible = not self.total_visible
        else:
            history = self.histories[self.selected_idx]
            history.visible = not history.visible

    def quit(self) -> None:
        self.should_quit = True

    def elapsed(self) -> float:
        return self._clock() - self.start

    def tick(self, counts: Mapping[str, int]) -> float:
        return self.sampler.sample(counts, self.elapsed())

    def is_high(self, history: SourceHistory) -> bool:
        return (
            self.threshold > 0
            and history.visible
            and history.series.latest > self.threshold
        )

    def visible_max_rate(self) -> float:
        rates = [
            rate
            for history in self.histories
            if history.visible
            for _, rate in history.series.data
        ]
        if self.total_visible:
            rates.extend(rate for _, rate in self.total.data)
        return max(rates, default=0.0)

    def y_max(self) -> float:
        raw_max = max(self.visible_max_rate() * Y_HEADROOM, Y_MIN_SCALE)
        return ceil_to_step(raw_max, nice_step(raw_max))

    def y_ticks(self, y_max: float) -> list[float]:
        step = nice_step(y_max)
        count = int(y_max / step + 0.01)
        return [i * step for i in range(count + 1)]

    def y_labels(self, y_max: float) -> list[str]:
        return [format_axis_label(v) for v in self.y_ticks(y_max)]

    def x_bounds(self, elapsed: float | None = None) -> tuple[float, float]:
        if elapsed is None:
            elapsed = self.elapsed()
        if elapsed <= X_WINDOW_S:
            return 0.0, max(X_WINDOW_S, elapsed)
        return elapsed - X_WINDOW_S, elapsed


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def chart_lines(
    datasets: Iterable[tuple[str, Iterable[tuple[float, float]]]],
    x_bounds: tuple[float, float],
    y_max: float,
    width: int,
    height: int,
) -> list[str]:
    """Plot (color, points) datasets as dots on a character grid.

    Returns one markup string per row, top row first.  Later datasets
    are drawn over earlier ones.
    """
    width = max(width, 1)
    height = max(height, 1)
    grid: list[list[str | None]] = [[None] * width for _ in range(height)]
    x0, x1 = x_bounds
    x_span = x1 - x0 if x1 > x0 else 1.0
    y_span = y_max if y_max > 0 else 1.0

    for color, points in datasets:
        for x, y in points:
            if x < x0 or x > x1:
                continue
            col = min(round((x - x0) / x_span * (width - 1)), width - 1)
            level = max(0.0, min(1.0, y / y_span))
            row = height - 1 - round(level * (height - 1))
            grid[row][col] = color

    return [
        "".join(f"[{color}]•[/]" if color else " " for color in row)
        for row in grid
    ]


def y_gutter(ticks: Iterable[float], y_max: float, height: int) -> list[str]:
    """Y-axis labels aligned with chart_lines() rows."""
    lines = [" " * (GUTTER_WIDTH - 1) + "│"] * height
    if y_max <= 0 or height <= 0:
        return lines
    for value in ticks:
        row = height - 1 - round(value / y_max * (height - 1))
        if 0 <= row < height:
            lines[row] = f"{format_axis_label(value):>{GUTTER_WIDTH - 2}} ┤"
    return lines


def x_axis_labels(x_bounds: tuple[float, float], width: int) -> str:
    x0, x1 = x_bounds
    left = f"{x0:.0f}s"
    mid = f"{(x0 + x1) / 2:.0f}s"
    right = f"{x1:.0f}s"
    if width < len(left) + len(mid) + len(right) + 2:
        return f"{left} {right}"
    mid_start = (width - len(mid)) // 2
    line = left.ljust(mid_start) + mid
    return line.ljust(width - len(right)) + right


def truncate(name: str, width: int) -> str:
    if len(name) <= width:
        return name
    return name[: width - 3] + "..."


# ---------------------------------------------------------------------------
# Text output
# ---------------------------------------------------------------------------


def format_topology(topology: Topology) -> str:
    """One-shot listing of controllers, their devices and interrupt lines."""
    if topology.is_empty:
        return NO_CONTROLLERS_TEXT

    lines = ["=== I2C HID Device Topology ===", ""]
    for controller in topology.controllers:
        irq = f" (IRQ {controller.irq})" if controller.irq is not None else ""
        lines.append(f"{controller.name} [bus {controller.bus_num}]{irq}")
        for device in controller.hid_devices:
            irq = f"IRQ {device.gpio_irq}" if device.gpio_irq is not None else "no IRQ"
            lines.append(
                f"  {device.acpi_name} - {device.device_type} "
                f"[{device.vendor_id:04X}:{device.product_id:04X}] ({irq})"
            )
            for name in device.input_names:
                lines.append(f"    - {name}")
            if device.driver:
                lines.append(f"    driver: {device.driver}")
        lines.append("")
    lines.append("Use 'i2cmon tui' for real-time monitoring.")
    return "\n".join(lines) + "\n"


def format_summary(controller: DashboardController) -> str:
    """Average and peak rate per source, printed when the dashboard exits."""
    sampler = controller.sampler
    if sampler.sample_count == 0:
        return ""

    rule = "-" * 80
    lines = [
        "",
        "=== Interrupt Rate Summary ===",
        "",
        f"{'Source':<40} {'Avg Rate':>12} {'Max Rate':>12} {'Type':>12}",
        rule,
    ]
    for history in sampler.histories:
        series = history.series
        lines.append(
            f"{history.display_name:<40} {series.avg:>10.1f}/s "
            f"{series.peak:>10.1f}/s {history.type_label:>12}"
        )
    lines.append(rule)
    total = sampler.total
    lines.append(f"{'TOTAL':<40} {total.avg:>10.1f}/s {total.peak:>10.1f}/s")
    lines.append("")
    lines.append(
        f"Samples: {sampler.sample_count} over {controller.elapsed():.1f}s"
    )
    return "\n".join(lines) + "\n\n"


def run_monitor(
    topology: Topology,
    counter: InterruptCounter,
    interval_ms: int = DEFAULT_INTERVAL_MS,
    count: int = 0,
    threshold: float = DEFAULT_THRESHOLD,
    out: TextIO | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Print one row of rates per tick; count=0 runs until interrupted."""
    out = out or sys.stdout
    sources = topology.all_sources()
    if not sources:
        print("No I2C-related interrupt sources found.", file=out)
        return 0

    print("=== I2C Interrupt Rate Monitor ===", file=out)
    print(
        f"Interval: {interval_ms}ms | Threshold: {threshold:.0f} irqs/s"
        f" | Sources: {len(sources)}",
        file=out,
    )
    print(file=out)
    for source in sources:
        prefix = "" if source.is_controller else "  └─ "
        print(
            f"{prefix}IRQ {source.irq:>3}: {source.name} ({source.device_type})",
            file=out,
        )
    print(file=out)

    interval_s = interval_ms / 1000.0
    sampler = RateSampler(sources, counter.snapshot(), interval_s)

    header = f"{'Sample':>6}"
    for source in sources:
        header += f"  {truncate(source.name, 18):>18}"
    print(f"{header}  {'Status':>10}", file=out, flush=True)

    sample_num = 0
    while True:
        sleep(interval_s)
        sample_num += 1
        sampler.sample(counter.snapshot(), sample_num * interval_s)

        row = f"{sample_num:>6}"
        for history in sampler.histories:
            row += f"  {format_rate(history.series.latest):>18}"
        status = "** HIGH" if sampler.high_sources(threshold) else "ok"
        print(f"{row}  {status:>10}", file=out, flush=True)

        if count > 0 and sample_num >= count:
            break
    return 0


# ---------------------------------------------------------------------------
# Widgets
# ---------------------------------------------------------------------------


class RateChartPanel(Widget):
    """Line chart of the visible rate series."""

    DEFAULT_CSS = """
    RateChartPanel {
        width: 1fr;
        height: 1fr;
        min-height: 8;
        border: solid $primary;
        padding: 0 1;
    }
    """

    def compose(self) -> ComposeResult:
        yield Static(id="chart-content")

    def update_content(self, controller: DashboardController) -> None:
        y_max = controller.y_max()
        x_bounds = controller.x_bounds()
        width = max(self.content_size.width - GUTTER_WIDTH, 10)
        height = max(self.content_size.height - 2, 3)

        datasets = [
            (h.color, h.series.data)
            for h in controller.histories
            if h.visible and h.series.data
        ]
        if controller.total_visible and controller.total.data:
            datasets.append((TOTAL_COLOR, controller.total.data))

        plot = chart_lines(datasets, x_bounds, y_max, width, height)
        gutter = y_gutter(controller.y_ticks(y_max), y_max, height)

        if controller.threshold > 0:
            title = f"[b]Interrupt Rates[/b] (threshold: {controller.threshold:.0f}/s)"
        else:
            title = "[b]Interrupt Rates[/b]"
        rows = [g + p for g, p in zip(gutter, plot)]
        axis = " " * GUTTER_WIDTH + x_axis_labels(x_bounds, width)
        self.query_one("#chart-content", Static).update(
            "\n".join([title, *rows, axis])
        )


class SourceTablePanel(Widget):
    """Per-source rate table with selection cursor and TOTAL row."""

    DEFAULT_CSS = """
    SourceTablePanel {
        width: 1fr;
        height: auto;
        max-height: 17;
        border: solid $primary;
        padding: 0 1;
    }
    """

    def compose(self) -> ComposeResult:
        yield Static(id="table-content")

    @staticmethod
    def _row(marker: str, name: str, kind: str, irq: str, series: RateSeries) -> str:
        peak = format_rate(series.peak) if series.samples else "-"
        return (
            f"{marker} {truncate(name, 36):<36} {kind:<15} {irq:<8} "
            f"{format_rate(series.latest):>10} {format_rate(series.avg):>10} "
            f"{peak:>10}"
        )

    def update_content(self, controller: DashboardController) -> None:
        lines = [
            f"[b]  {'Source':<36} {'Type':<15} {'IRQ':<8} "
            f"{'Rate':>10} {'Avg':>10} {'Max':>10}[/b]"
        ]
        for i, history in enumerate(controller.histories):
            selected = i == controller.selected_idx
            style = history.color if history.visible else "dim"
            if controller.is_high(history):
                style += f" on {HIGH_BACKGROUND}"
            if selected:
                style += " reverse"
            text = self._row(
                ">" if selected else " ",
                history.display_name,
                history.type_label,
                f"IRQ {history.irq}",
                history.series,
            )
            lines.append(f"[{style}]{text}[/]")

        style = TOTAL_COLOR if controller.total_visible else "dim"
        style += " bold"
        if controller.total_selected:
            style += " reverse"
        text = self._row(
            ">" if controller.total_selected else " ",
            "TOTAL",
            "",
            "",
            controller.total,
        )
        lines.append(f"[{style}]{text}[/]")
        self.query_one("#table-content", Static).update("\n".join(lines))


class StatusLine(Static):
    DEFAULT_CSS = """
    StatusLine {
        height: 1;
        color: $text-muted;
        padding: 0 1;
    }
    """

    def update_content(self, controller: DashboardController, interval_ms: int) -> None:
        self.update(
            f"{controller.elapsed():.0f}s elapsed  "
            f"{interval_ms}ms interval  "
            f"#{controller.sampler.sample_count} samples"
        )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class RatesUpdated(Message):
    def __init__(self, total_rate: float) -> None:
        super().__init__()
        self.total_rate = total_rate


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


class I2cMonApp(App):
    """I2C HID interrupt rate dashboard."""

    TITLE = "i2cmon - I2C HID Interrupt Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }
    """

    BINDINGS = [
        Binding("q,escape", "quit", "Quit"),
        Binding("up,k", "select_prev", "Prev"),
        Binding("down,j", "select_next", "Next"),
        Binding("space", "toggle_visible", "Hide/Show"),
    ]

    def __init__(
        self,
        controller: DashboardController,
        counter: InterruptCounter,
        interval_ms: int = DEFAULT_INTERVAL_MS,
    ) -> None:
        super().__init__()
        self.controller = controller
        self._counter = counter
        self._interval_ms = interval_ms
        self._poll_timer = None
        self.counter_error: I2cMonError | None = None

    def compose(self) -> ComposeResult:
        yield Header()
        yield RateChartPanel()
        yield SourceTablePanel()
        yield StatusLine()
        yield Footer()

    def on_mount(self) -> None:
        self._poll_timer = self.set_interval(
            self._interval_ms / 1000.0, self._poll_interrupts
        )
        self._refresh_panels()

    def _poll_interrupts(self) -> None:
        if self.controller.should_quit:
            return
        try:
            counts = self._counter.snapshot()
        except CounterReadError as exc:
            logger.error("%s", exc)
            self.counter_error = exc
            self.controller.quit()
            self.exit(return_code=1)
            return
        total_rate = self.controller.tick(counts)
        self.post_message(RatesUpdated(total_rate))

    def on_rates_updated(self, message: RatesUpdated) -> None:
        self._refresh_panels()

    def _refresh_panels(self) -> None:
        self.query_one(RateChartPanel).update_content(self.controller)
        self.query_one(SourceTablePanel).update_content(self.controller)
        self.query_one(StatusLine).update_content(self.controller, self._interval_ms)

    def action_select_prev(self) -> None:
        self.controller.select_prev()
        self._refresh_panels()

    def action_select_next(self) -> None:
        self.controller.select_next()
        self._refresh_panels()

    def action_toggle_visible(self) -> None:
        self.controller.toggle_visibility()
        self._refresh_panels()

    async def action_quit(self) -> None:
        self.controller.quit()
        self.exit()


def run_tui(
    topology: Topology,
    counter: InterruptCounter,
    interval_ms: int = DEFAULT_INTERVAL_MS,
    threshold: float = DEFAULT_THRESHOLD,
) -> int:
    if topology.is_empty:
        print(NO_CONTROLLERS_TEXT, end="", file=sys.stderr)
        return 1

    sampler = RateSampler(
        topology.all_sources(), counter.snapshot(), interval_ms / 1000.0
    )
    if not sampler.histories:
        print(
            "No interrupt sources found for the discovered I2C devices.",
            file=sys.stderr,
        )
        return 1

    controller = DashboardController(sampler, threshold)
    app = I2cMonApp(controller, counter, interval_ms)
    app.run()
    print(format_summary(controller), end="")
    if app.counter_error is not None:
        raise app.counter_error
    return app.return_code or 0


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def setup_logging(
    verbose: bool = False, log_file: Path | None = None, tui: bool = False
) -> None:
    """Route log records to a file, the Textual console, or stderr."""
    if log_file is not None:
        handler: logging.Handler = logging.FileHandler(log_file)
    elif tui:
        handler = TextualHandler()
    else:
        handler = logging.StreamHandler()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[handler],
        force=True,
    )


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value}")
    return number


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="i2cmon",
        description="i2cmon -- I2C HID interrupt rate monitor",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log discovery details",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Write log records to this file",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser(
        "list", help="List detected I2C devices and their interrupt sources"
    )

    for name, help_text in (
        ("monitor", "Monitor interrupt rates in text mode"),
        ("tui", "Live TUI dashboard with charts"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument(
            "-i",
            "--interval",
            type=_positive_int,
            default=DEFAULT_INTERVAL_MS,
            help=f"Sampling interval in milliseconds (default: {DEFAULT_INTERVAL_MS})",
        )
        cmd.add_argument(
            "-t",
            "--threshold",
            type=float,
            default=DEFAULT_THRESHOLD,
            help=f"Highlight rates above this many irqs/s (default: {DEFAULT_THRESHOLD:.0f})",
        )
        if name == "monitor":
            cmd.add_argument(
                "-n",
                "--count",
                type=_non_negative_int,
                default=0,
                help="Number of samples (0 = unlimited)",
            )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, args.log_file, tui=args.command == "tui")

    counter = InterruptCounter()
    try:
        topology = TopologyDiscovery().discover()
        if args.command == "list":
            print(format_topology(topology), end="")
            return 0
        if args.command == "monitor":
            return run_monitor(
                topology, counter, args.interval, args.count, args.threshold
            )
        return run_tui(topology, counter, args.interval, args.threshold)
    except I2cMonError as exc:
        logger.debug("fatal error", exc_info=True)
        print(f"i2cmon: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
