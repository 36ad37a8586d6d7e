from typing import Optional, Union
import torch


class SeedGenerator:
    """
    Reproducible source of ``torch.Generator`` objects.

    A model owns one instance and hands its generator to every sampling call
    (observation sampling and sequence sampling).
    """

    def __init__(self, seed: Optional[int] = None, device: str = "cpu"):
        self._base_seed: int = int(seed if seed is not None else torch.initial_seed())
        self._device = device
        self._generator: torch.Generator = torch.Generator(device=device).manual_seed(self._base_seed)

    def reseed(self, seed: Optional[int] = None) -> None:
        self._base_seed = int(seed if seed is not None else torch.initial_seed())
        self._generator = torch.Generator(device=self._device).manual_seed(self._base_seed)

    def get(self) -> torch.Generator:
        return self._generator

    @property
    def seed(self) -> int:
        return self._base_seed

    @seed.setter
    def seed(self, value: int) -> None:
        self.reseed(value)

    def __repr__(self) -> str:
        return f"SeedGenerator(base_seed={self._base_seed}, device={self._device})"


def resolve_generator(source: Union[None, int, torch.Generator, SeedGenerator]) -> Optional[torch.Generator]:
    if source is None or isinstance(source, torch.Generator):
        return source
    if isinstance(source, SeedGenerator):
        return source.get()
    return torch.Generator().manual_seed(int(source))
