"""
Run configuration for the specular fit.

Every knob the fit reads lives in one of the frozen dataclasses below. A
settings object is built once per run (from defaults, a preset, or a JSON
file) and handed to each stage; nothing downstream mutates it. Variants
for a new run are derived with dataclasses.replace().

Validation happens at construction time in __post_init__, so an invalid
value fails with a ValueError before any capture data is touched.

JSON layout accepted by load_settings():

    {
        "texture_size": [1024, 1024],
        "convergence_tolerance": 1e-5,
        "basis": {"basis_count": 8, "basis_resolution": 90,
                  "specular_min_width_frac": 0.2},
        "normal": {"enabled": true, "min_normal_damping": 1.0},
        "reconstruction": {"reconstruct_all": false},
        "export": {"combine_weights": true, "save_gltf": true}
    }
"""

import json
import math
from dataclasses import dataclass, field, fields
from pathlib import Path


def _round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up."""
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class SpecularBasisSettings:
    """
    Shape of the basis set: how many lobes, how finely each is tabulated,
    and how narrow, wide and flexible a lobe is allowed to be.

    specular_min_width    narrowest drop (in bins) any lobe may have.
    specular_max_width    widest smoothstep (in bins) a lobe is built from;
                          equal to min width gives hard steps.
    basis_complexity      number of smoothstep functions available to each
                          lobe (degrees of freedom per lobe and channel).
    """
    basis_count: int = 8
    basis_resolution: int = 90
    specular_min_width: int = 18
    specular_max_width: int = 90
    basis_complexity: int = 73
    metallicity: float = 0.0
    smith_masking_shadowing: bool = True

    def __post_init__(self):
        if self.basis_count <= 0:
            raise ValueError("Basis count must be greater than zero.")
        if self.basis_resolution <= 0:
            raise ValueError("Basis resolution must be greater than zero.")
        if not 0 <= self.specular_min_width <= self.basis_resolution:
            raise ValueError(
                f"Specular min width must be between 0 and the basis resolution "
                f"({self.basis_resolution}), got {self.specular_min_width}."
            )
        if self.specular_max_width < 0:
            raise ValueError("Specular max width must not be negative.")
        if self.basis_complexity <= 0:
            raise ValueError("Basis complexity must be greater than zero.")
        if not 0.0 <= self.metallicity <= 1.0:
            raise ValueError("Metallicity must be between 0 and 1.")

    @classmethod
    def from_fractions(cls, basis_count: int = 8, basis_resolution: int = 90,
                       specular_min_width_frac: float = 0.2,
                       specular_max_width_frac: float = 1.0,
                       basis_complexity_frac: float = 1.0,
                       **kwargs) -> "SpecularBasisSettings":
        """
        Build basis settings from resolution-independent fractions.

        Widths are fractions of the basis resolution. Complexity is a
        fraction of the number of distinct lobe end points, which is
        resolution - min_width + 1.
        """
        min_width = _round_half_up(specular_min_width_frac * basis_resolution)
        max_width = _round_half_up(specular_max_width_frac * basis_resolution)
        complexity = _round_half_up(
            basis_complexity_frac * (basis_resolution - min_width + 1)
        )
        return cls(
            basis_count=basis_count,
            basis_resolution=basis_resolution,
            specular_min_width=min_width,
            specular_max_width=max_width,
            basis_complexity=max(1, complexity),
            **kwargs,
        )


@dataclass(frozen=True)
class NormalOptimizationSettings:
    """Per-texel Levenberg–Marquardt normal refinement."""
    enabled: bool = True
    min_normal_damping: float = 1.0
    normal_smoothing_iterations: int = 0
    levenberg_marquardt: bool = True
    unsuccessful_lm_iterations_allowed: int = 8
    # Hard cap on LM iterations per texel, on top of the unsuccessful counter.
    max_lm_iterations: int = 100

    def __post_init__(self):
        if self.min_normal_damping < 0.0 or not math.isfinite(self.min_normal_damping):
            raise ValueError("Minimum normal damping must be a finite, non-negative number.")
        if self.normal_smoothing_iterations < 0:
            raise ValueError("Normal smoothing iterations must not be negative.")
        if self.unsuccessful_lm_iterations_allowed < 0:
            raise ValueError("Unsuccessful LM iterations allowed must not be negative.")
        if self.max_lm_iterations <= 0:
            raise ValueError("Max LM iterations must be greater than zero.")


@dataclass(frozen=True)
class ReconstructionSettings:
    """
    reconstruct_all=False compares only the primary view; True renders every
    view of the reconstruction view set and writes the images to disk.
    """
    reconstruct_all: bool = False


@dataclass(frozen=True)
class ExportSettings:
    """Which artifacts the export stage writes."""
    combine_weights: bool = True
    save_gltf: bool = True


@dataclass(frozen=True)
class SpecularFitSettings:
    """
    Top-level, immutable settings for one fit run.

    texture_width/height     texture-space raster shared by every map.
    convergence_tolerance    relative RMSE improvement below which the
                             alternation stops.
    max_iterations           cap on outer alternations.
    include_constant_term    also estimate an additive constant
                             ("translucency") term with the final diffuse.
    constrain_weight_sum     add a sum-to-one equality constraint to each
                             texel's weight solve.
    error_gamma              gamma used for the display-domain RMSE pass.
    block_size               texels per work item for texel-parallel passes.
    max_workers              thread pool size (None lets the executor pick).
    random_seed              seed for the K-means weight initialization.
    """
    texture_width: int = 1024
    texture_height: int = 1024
    convergence_tolerance: float = 1e-5
    max_iterations: int = 32
    include_constant_term: bool = False
    constrain_weight_sum: bool = True
    error_gamma: float = 2.2
    block_size: int = 4096
    max_workers: int | None = None
    random_seed: int = 0
    basis: SpecularBasisSettings = field(default_factory=SpecularBasisSettings)
    normal: NormalOptimizationSettings = field(default_factory=NormalOptimizationSettings)
    reconstruction: ReconstructionSettings = field(default_factory=ReconstructionSettings)
    export: ExportSettings = field(default_factory=ExportSettings)

    def __post_init__(self):
        if self.texture_width <= 0 or self.texture_height <= 0:
            raise ValueError("Texture size must be greater than zero.")
        if self.convergence_tolerance < 0.0:
            raise ValueError("Convergence tolerance must not be negative.")
        if self.max_iterations <= 0:
            raise ValueError("Max iterations must be greater than zero.")
        if self.error_gamma <= 0.0:
            raise ValueError("Error gamma must be greater than zero.")
        if self.block_size <= 0:
            raise ValueError("Block size must be greater than zero.")
        if self.max_workers is not None and self.max_workers <= 0:
            raise ValueError("Max workers must be greater than zero.")

    @property
    def texture_size(self) -> tuple[int, int]:
        return self.texture_width, self.texture_height


# ---------------------------------------------------------------------------
# Dictionary / JSON loading
# ---------------------------------------------------------------------------

_BASIS_FRACTION_KEYS = {
    "specular_min_width_frac",
    "specular_max_width_frac",
    "basis_complexity_frac",
}


def _check_keys(section: str, data: dict, allowed: set[str]) -> None:
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(
            f"Unknown {section} setting(s): {', '.join(sorted(unknown))}"
        )


def _field_names(cls) -> set[str]:
    return {f.name for f in fields(cls)}


def _basis_from_dict(data: dict) -> SpecularBasisSettings:
    _check_keys("basis", data, _field_names(SpecularBasisSettings) | _BASIS_FRACTION_KEYS)

    # Fractions and explicit bin counts are alternative spellings of the same
    # thing; mixing them would make one of them silently win.
    fraction_keys = _BASIS_FRACTION_KEYS & set(data)
    if fraction_keys:
        explicit = {"specular_min_width", "specular_max_width", "basis_complexity"} & set(data)
        if explicit:
            raise ValueError(
                f"Basis settings mix fractions ({', '.join(sorted(fraction_keys))}) "
                f"with bin counts ({', '.join(sorted(explicit))})."
            )
        return SpecularBasisSettings.from_fractions(**data)
    return SpecularBasisSettings(**data)


def settings_from_dict(data: dict) -> SpecularFitSettings:
    """
    Build SpecularFitSettings from a plain dictionary (e.g. parsed JSON).

    Nested sections ("basis", "normal", "reconstruction", "export") map onto
    the nested dataclasses. "texture_size": [w, h] is accepted as shorthand
    for texture_width/texture_height. Unknown keys raise ValueError so a typo
    in a settings file doesn't silently fall back to a default.
    """
    data = dict(data)
    sections = {
        "basis": _basis_from_dict(data.pop("basis", {})),
    }

    for name, cls in (("normal", NormalOptimizationSettings),
                      ("reconstruction", ReconstructionSettings),
                      ("export", ExportSettings)):
        section = data.pop(name, {})
        _check_keys(name, section, _field_names(cls))
        sections[name] = cls(**section)

    if "texture_size" in data:
        width, height = data.pop("texture_size")
        data["texture_width"] = int(width)
        data["texture_height"] = int(height)

    top_level = _field_names(SpecularFitSettings) - set(sections)
    _check_keys("fit", data, top_level)

    return SpecularFitSettings(**data, **sections)


def load_settings(path: Path) -> SpecularFitSettings:
    """Read a JSON settings file. See the module docstring for the layout."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a JSON object.")
    return settings_from_dict(data)
