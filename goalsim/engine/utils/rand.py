"""Gestione dei generatori casuali usati dalle simulazioni Monte Carlo.

Il modulo espone il protocollo :class:`RandomPathGenerator` e la sua
implementazione :class:`BoxMullerGenerator`, che converte coppie di uniformi in
shock normali standard. Ogni worker riceve un generatore figlio indipendente
ottenuto da :class:`numpy.random.SeedSequence`, così che le simulazioni
parallele restino riproducibili a parità di seed senza condividere stato.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

import numpy as np
import yaml

DEFAULT_STREAM = "global"
DEFAULT_SEED_PATH = Path("audit") / "seeds.yml"

__all__ = [
    "DEFAULT_SEED_PATH",
    "DEFAULT_STREAM",
    "RandomPathGenerator",
    "BoxMullerGenerator",
    "box_muller",
    "load_seeds",
    "seed_for_stream",
    "generator_from_seed",
]


@runtime_checkable
class RandomPathGenerator(Protocol):
    """Sorgente di shock normali standard per un cammino simulato."""

    def standard_normal(self, size: int | tuple[int, ...]) -> np.ndarray:
        """Restituisce ``size`` estrazioni da una normale standard."""

    def spawn(self, count: int) -> list[RandomPathGenerator]:
        """Crea ``count`` generatori figli statisticamente indipendenti."""


def box_muller(u1: np.ndarray, u2: np.ndarray) -> np.ndarray:
    """Trasforma due campioni uniformi in ``(0, 1]`` in normali standard."""

    return np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)


class BoxMullerGenerator:
    """Generatore NumPy che produce shock normali via trasformata di Box–Muller.

    Con ``seed=None`` l'entropia proviene dal sistema operativo e ogni
    esecuzione è diversa; con un seed intero la sequenza è deterministica.
    """

    def __init__(self, seed: int | np.random.SeedSequence | None = None) -> None:
        if isinstance(seed, np.random.SeedSequence):
            self._sequence = seed
        else:
            self._sequence = np.random.SeedSequence(seed)
        self._rng = np.random.default_rng(self._sequence)
        self._spawn_lock = threading.Lock()

    @property
    def entropy(self) -> int | None:
        """Entropia radice della sequenza, utile per l'audit dei run."""

        entropy = self._sequence.entropy
        return int(entropy) if isinstance(entropy, int) else None

    def uniform(self, size: int | tuple[int, ...]) -> np.ndarray:
        # ``random`` campiona in [0, 1): il complemento esclude lo zero dal log.
        return 1.0 - self._rng.random(size)

    def standard_normal(self, size: int | tuple[int, ...]) -> np.ndarray:
        return box_muller(self.uniform(size), self.uniform(size))

    def spawn(self, count: int) -> list[RandomPathGenerator]:
        if count < 1:
            raise ValueError("count must be >= 1")
        # ``SeedSequence.spawn`` aggiorna un contatore interno: serializziamo l'accesso.
        with self._spawn_lock:
            children = self._sequence.spawn(count)
        return [BoxMullerGenerator(child) for child in children]


def load_seeds(seed_path: Path | str = DEFAULT_SEED_PATH) -> dict[str, int]:
    """Carica la mappatura ``stream -> seed`` dal file YAML indicato.

    Un file assente restituisce una mappatura vuota: in quel caso le
    simulazioni usano entropia di sistema.
    """

    path = Path(seed_path)
    if not path.exists():
        return {}

    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    if isinstance(data, dict) and "seeds" in data and isinstance(data["seeds"], dict):
        seeds_section = data["seeds"]
    elif isinstance(data, dict):
        seeds_section = data
    else:
        raise TypeError("Seed file must contain a mapping of stream -> seed")

    return {str(key): int(value) for key, value in seeds_section.items() if value is not None}


def seed_for_stream(
    stream: str = DEFAULT_STREAM,
    *,
    seeds: Mapping[str, int] | None = None,
    seed_path: Path | str = DEFAULT_SEED_PATH,
) -> int | None:
    """Ricava il seed per ``stream`` ricadendo sullo stream globale."""

    seeds_dict = dict(seeds) if seeds is not None else load_seeds(seed_path)
    if stream in seeds_dict:
        return int(seeds_dict[stream])
    if DEFAULT_STREAM in seeds_dict:
        return int(seeds_dict[DEFAULT_STREAM])
    return None


def generator_from_seed(
    seed: int | RandomPathGenerator | None = None,
    *,
    stream: str = DEFAULT_STREAM,
    seeds: Mapping[str, int] | None = None,
    seed_path: Path | str = DEFAULT_SEED_PATH,
) -> RandomPathGenerator:
    """Restituisce un generatore coerente con lo stream richiesto."""

    if isinstance(seed, RandomPathGenerator):
        return seed
    resolved = seed if seed is not None else seed_for_stream(
        stream, seeds=seeds, seed_path=seed_path
    )
    return BoxMullerGenerator(resolved)
