"""Lookup of Nanonis signals by name, signal index and TCP logger channel.

Nanonis reports up to 128 signal names (`Signals.NamesGet`); only 24 of them can be
routed to the TCP logger stream, at a fixed channel slot. `SignalRegistry` joins the
two so the rest of the package can say "freq shift" and get both the index used by
`Signals.ValsGet` and the position of that signal in a streamed frame.

Lookup is case-insensitive and accepts the full name ("OC M1 Freq. Shift (Hz)"), the
name without its unit ("oc m1 freq. shift") and a few common aliases ("df").
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from loguru import logger


@dataclass(frozen=True)
class Signal:
    """A Nanonis signal as reported by the instrument."""

    name: str
    index: int
    tcp_channel: Optional[int] = None

    @property
    def clean_name(self) -> str:
        return clean_signal_name(self.name)


# signal index ranges that the TCP logger exposes, mapped onto slots 0..23
STANDARD_TCP_MAP: dict[int, int] = {
    **{i: i for i in range(0, 8)},
    **{i: i - 16 for i in range(24, 32)},
    **{i: i - 58 for i in range(74, 82)},
}

_ALIASES: dict[str, tuple[str, ...]] = {
    "current": ("i", "cur"),
    "bias": ("u", "voltage", "v"),
    "x": ("x pos", "x position", "xpos"),
    "y": ("y pos", "y position", "ypos"),
    "z": ("z pos", "z position", "zpos", "height"),
    "oc m1 freq. shift": ("freq shift", "frequency shift", "df", "oc freq shift"),
    "oc m1 amplitude": ("amplitude", "oc amp"),
    "oc m1 phase": ("phase", "oc phase"),
    "li demod 1 x": ("li1x", "demod1x"),
    "li demod 1 y": ("li1y", "demod1y"),
    "li demod 2 x": ("li2x", "demod2x"),
    "li demod 2 y": ("li2y", "demod2y"),
    "z ctrl shift": ("z shift", "zshift"),
}


def clean_signal_name(name: str) -> str:
    """'Current (A)' -> 'Current'"""
    return name.split("(")[0].strip()


def signal_aliases(name: str) -> list[str]:
    key = clean_signal_name(name).lower()
    aliases = set(_ALIASES.get(key, ()))
    # multi-word patterns also match as substrings, e.g. "oc m1 freq. shift 2"
    for pattern, pattern_aliases in _ALIASES.items():
        if " " in pattern and pattern in key and pattern != key:
            aliases.update(pattern_aliases)
    aliases.discard(key)
    return sorted(aliases)


class SignalRegistry:
    """Case-insensitive map from names/aliases to `Signal`.

    Parameters
    ----------
    signals : Iterable[Signal]
        Signals to register.
    """

    def __init__(self, signals: Iterable[Signal] = ()):
        self._by_key: dict[str, Signal] = {}
        self._signals: list[Signal] = []
        for signal in signals:
            self.add(signal)

    @classmethod
    def from_names(
        cls,
        names: Iterable[str],
        tcp_mapping: Optional[Mapping[int, int]] = None,
    ) -> SignalRegistry:
        """Build from `Signals.NamesGet` output.

        `tcp_mapping` entries override (or extend) `STANDARD_TCP_MAP`.
        """
        mapping = dict(STANDARD_TCP_MAP)
        if tcp_mapping:
            mapping.update({int(k): int(v) for k, v in tcp_mapping.items()})
        registry = cls(
            Signal(name, index, mapping.get(index)) for index, name in enumerate(names)
        )
        registry.add_aliases()
        logger.debug(
            "Signal registry: {} signals, {} on the TCP logger",
            len(registry),
            len(registry.tcp_signals()),
        )
        return registry

    def add(self, signal: Signal) -> None:
        self._signals.append(signal)
        self._by_key.setdefault(signal.name.lower(), signal)
        clean = signal.clean_name.lower()
        if clean:
            self._by_key.setdefault(clean, signal)

    def add_aliases(self) -> None:
        """Register aliases; an alias never shadows an existing name."""
        for signal in self._signals:
            for alias in signal_aliases(signal.name):
                self._by_key.setdefault(alias, signal)

    def __len__(self) -> int:
        return len(self._signals)

    def __iter__(self):
        return iter(self._signals)

    def __contains__(self, name: str) -> bool:
        return name.lower().strip() in self._by_key

    def get(self, name: str) -> Optional[Signal]:
        return self._by_key.get(name.lower().strip())

    def __getitem__(self, name: str) -> Signal:
        signal = self.get(name)
        if signal is None:
            raise KeyError(f"Unknown signal '{name}'")
        return signal

    def by_index(self, index: int) -> Optional[Signal]:
        for signal in self._signals:
            if signal.index == index:
                return signal
        return None

    def by_tcp_channel(self, channel: int) -> Optional[Signal]:
        for signal in self._signals:
            if signal.tcp_channel == channel:
                return signal
        return None

    def find_like(self, query: str) -> list[Signal]:
        q = query.lower()
        return [s for s in self._signals if q in s.name.lower()]

    def tcp_signals(self) -> list[Signal]:
        return [s for s in self._signals if s.tcp_channel is not None]

    def all_names(self) -> list[str]:
        return [s.name for s in self._signals]
