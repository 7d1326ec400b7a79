from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from pillseg.errors import InvalidInputError


class LuminanceMode(str, Enum):
    ADAPTIVE = "adaptive"
    GLOBAL = "global"


class ChromaMode(str, Enum):
    OTSU = "otsu"
    KMEANS = "kmeans"


# Older callers spelled the global luminance mode after the threshold it uses
_LUMINANCE_ALIASES = {"otsu": LuminanceMode.GLOBAL}


def parse_luminance_mode(value: Union[str, LuminanceMode]) -> LuminanceMode:
    if isinstance(value, LuminanceMode):
        return value
    name = str(value).strip().lower()
    if name in _LUMINANCE_ALIASES:
        return _LUMINANCE_ALIASES[name]
    try:
        return LuminanceMode(name)
    except ValueError:
        raise InvalidInputError(f"Unknown luminance mode: {value}") from None


def parse_chroma_mode(value: Union[str, ChromaMode]) -> ChromaMode:
    if isinstance(value, ChromaMode):
        return value
    try:
        return ChromaMode(str(value).strip().lower())
    except ValueError:
        raise InvalidInputError(f"Unknown chroma mode: {value}") from None


def check_percentile(value: float) -> float:
    try:
        p = float(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"Foreground percentile must be a number, got {value!r}") from None
    if not 0.0 < p < 1.0:
        raise InvalidInputError(f"Foreground percentile must be in (0, 1), got {p}")
    return p


@dataclass
class PipelineConfig:
    lum_mode: LuminanceMode = LuminanceMode.ADAPTIVE
    chroma_mode: ChromaMode = ChromaMode.OTSU
    fg_percentile: float = 0.65
    tile_grid: Tuple[int, int] = (8, 8)
    clip_min: float = 1.5
    clip_max: float = 5.0
    min_area: Optional[int] = None      # None -> max(64, W*H/10000)
    kmeans_seed: int = 0
    name: str = field(default="custom", compare=False)

    def __post_init__(self) -> None:
        self.lum_mode = parse_luminance_mode(self.lum_mode)
        self.chroma_mode = parse_chroma_mode(self.chroma_mode)
        self.fg_percentile = check_percentile(self.fg_percentile)

        try:
            grid = tuple(int(v) for v in self.tile_grid)
        except (TypeError, ValueError):
            raise InvalidInputError(f"Tile grid must be two positive integers, got {self.tile_grid!r}") from None
        if len(grid) != 2 or min(grid) < 1:
            raise InvalidInputError(f"Tile grid must be two positive integers, got {self.tile_grid}")
        self.tile_grid = grid

        try:
            self.clip_min = float(self.clip_min)
            self.clip_max = float(self.clip_max)
        except (TypeError, ValueError):
            raise InvalidInputError(
                f"Clip limits must be numbers, got [{self.clip_min!r}, {self.clip_max!r}]"
            ) from None
        if not 0.0 < self.clip_min <= self.clip_max:
            raise InvalidInputError(
                f"Clip range must satisfy 0 < clip_min <= clip_max, got [{self.clip_min}, {self.clip_max}]"
            )
        if self.min_area is not None:
            try:
                self.min_area = int(self.min_area)
            except (TypeError, ValueError):
                raise InvalidInputError(f"Minimum area must be an integer, got {self.min_area!r}") from None
            if self.min_area < 1:
                raise InvalidInputError(f"Minimum area must be positive, got {self.min_area}")

    @classmethod
    def from_params(cls, params: Dict[str, Any], base: Optional["PipelineConfig"] = None) -> "PipelineConfig":
        """
        Build a config from loosely typed values (form fields, CLI options).

        Empty and None values are ignored so that a base config (usually a
        preset) keeps its own settings for anything the caller left blank.
        """
        values = vars(base).copy() if base is not None else {}
        overridden = False
        for key in ("lum_mode", "chroma_mode", "fg_percentile", "min_area", "kmeans_seed"):
            raw = params.get(key)
            if raw is None or raw == "":
                continue
            if key in ("min_area", "kmeans_seed"):
                try:
                    raw = int(raw)
                except (TypeError, ValueError):
                    raise InvalidInputError(f"{key} must be an integer, got {raw!r}") from None
            values[key] = raw
            overridden = True
        if overridden:
            values["name"] = "custom"
        return cls(**values)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "lum_mode": self.lum_mode.value,
            "chroma_mode": self.chroma_mode.value,
            "fg_percentile": self.fg_percentile,
            "tile_grid": list(self.tile_grid),
            "clip_min": self.clip_min,
            "clip_max": self.clip_max,
            "min_area": self.min_area,
            "kmeans_seed": self.kmeans_seed,
        }
