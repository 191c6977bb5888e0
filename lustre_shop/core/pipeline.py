"""
Specular fit pipeline: stage definitions.

The fit runs as a fixed sequence of stages, each a distinct logged step
that the worker reports on:

    1. Load Capture: read capture.json, photographs, masks and the mesh;
       bake the mesh into texel-space positions and TBN frames
    2. Sample Observations: re-project every covered texel into every view
       and read its radiance, masking occluded, back-facing and saturated
       samples
    3. Basis Decomposition: alternate basis, weight, normal and roughness
       updates until the RMSE stops improving
    4. Final Diffuse: per-texel diffuse albedo (and optional constant term)
       with the specular part held fixed
    5. Reconstruction: texture-space and image-space RMSE, linear and
       gamma-corrected, plus the optional normal map diagnostic
    6. Export: write weights, textures, basis functions, the RMSE report
       and an optional glTF binary
"""

from lustre_shop.core.settings import SpecularBasisSettings


class FitStage:
    """
    String constants identifying each pipeline stage.

    Used as keys for progress tracking, logging and worker signals.
    """
    LOAD_CAPTURE = "load_capture"
    SAMPLE_OBSERVATIONS = "sample_observations"
    DECOMPOSITION = "decomposition"
    FINAL_DIFFUSE = "final_diffuse"
    RECONSTRUCTION = "reconstruction"
    EXPORT = "export"


# Order in which the worker runs the stages.
STAGE_ORDER = [
    FitStage.LOAD_CAPTURE,
    FitStage.SAMPLE_OBSERVATIONS,
    FitStage.DECOMPOSITION,
    FitStage.FINAL_DIFFUSE,
    FitStage.RECONSTRUCTION,
    FitStage.EXPORT,
]

STAGE_DISPLAY_NAMES = {
    FitStage.LOAD_CAPTURE: "Loading Capture",
    FitStage.SAMPLE_OBSERVATIONS: "Sampling Observations",
    FitStage.DECOMPOSITION: "Basis Decomposition",
    FitStage.FINAL_DIFFUSE: "Final Diffuse",
    FitStage.RECONSTRUCTION: "Reconstruction",
    FitStage.EXPORT: "Exporting",
}

# Basis presets trade fit time against how much specular variety the basis
# can express:
#   Preview   4 lobes at 45 bins: a quick look at a new capture.
#   Standard  8 lobes at 90 bins: the default.
#   Detailed  12 lobes at 180 bins: sharp highlights, many materials.
BASIS_PRESETS = {
    "Preview (4 lobes)": SpecularBasisSettings.from_fractions(basis_count=4, basis_resolution=45),
    "Standard (8 lobes)": SpecularBasisSettings.from_fractions(basis_count=8, basis_resolution=90),
    "Detailed (12 lobes)": SpecularBasisSettings.from_fractions(basis_count=12, basis_resolution=180),
}

DEFAULT_PRESET = "Standard (8 lobes)"
