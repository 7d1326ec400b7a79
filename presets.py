import numpy as np

from pillseg.color_metrics import extract_color_metrics, validate_image
from pillseg.config import ChromaMode, LuminanceMode, PipelineConfig
from pillseg.errors import InvalidInputError
from pillseg.masks import MIN_CHROMA_SPREAD

PRESETS = {
    # Sample driver settings: shadow-robust lightness, clustered chroma
    "shadowed": dict(lum_mode=LuminanceMode.ADAPTIVE, chroma_mode=ChromaMode.KMEANS, fg_percentile=0.65),
    # Evenly lit, well separated colours
    "clean": dict(lum_mode=LuminanceMode.GLOBAL, chroma_mode=ChromaMode.OTSU, fg_percentile=0.65),
    # White, gray or black objects: lightness has to find them on its own
    "achromatic": dict(lum_mode=LuminanceMode.GLOBAL, chroma_mode=ChromaMode.OTSU, fg_percentile=0.55),
}

DEFAULT_PRESET = "shadowed"

# Lightness std along the image border above which the background counts as unevenly lit
UNEVEN_BORDER_STD = 6.0


def analyze_image(bgr):
    metrics = extract_color_metrics(bgr)
    lightness = metrics.lightness
    chroma = metrics.chroma

    border = np.concatenate([lightness[0, :], lightness[-1, :], lightness[:, 0], lightness[:, -1]])
    c1, c99 = np.percentile(chroma, [1, 99])
    return {
        "mean": round(float(np.mean(lightness)), 2),
        "std": round(float(np.std(lightness)), 2),
        "border_std": round(float(np.std(border)), 2),
        "chroma_spread": round(float(chroma.max() - chroma.min()), 2),
        "chroma_range": round(float(c99 - c1), 2),
    }


def suggest_preset(metrics):
    if metrics["chroma_spread"] < MIN_CHROMA_SPREAD or metrics["chroma_range"] < MIN_CHROMA_SPREAD:
        return "achromatic"
    if metrics["border_std"] > UNEVEN_BORDER_STD:
        return "shadowed"
    return "clean"


def get_preset(name: str, bgr=None) -> PipelineConfig:
    """
    PipelineConfig for a named preset. "auto" measures the image and picks
    one with suggest_preset, so it needs bgr.
    """
    key = (name or DEFAULT_PRESET).strip().lower()
    if key == "auto":
        if bgr is None:
            raise InvalidInputError("The auto preset needs the image to analyze")
        validate_image(bgr)
        key = suggest_preset(analyze_image(bgr))
    if key not in PRESETS:
        raise InvalidInputError(f"Unknown preset: {name}. Choose from: auto, {', '.join(PRESETS)}")
    return PipelineConfig(name=key, **PRESETS[key])
