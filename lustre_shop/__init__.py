"""
Lustre Shop: Specular Basis Fitting for Multi-View Captures

This is the top-level package for Lustre Shop. Given a calibrated
photometric capture (camera poses, light positions and intensities,
photographs and a UV-mapped mesh), it fits a compact spatially-varying
BRDF: a handful of global specular basis lobes, a per-texel weight map,
diffuse albedo, refined normals and a roughness/specular texture. The
fit is then validated by re-rendering the capture views and reporting
RMSE in linear and gamma-encoded domains.

The version string below is the single source of truth for the
package's version number, referenced by pyproject.toml.
"""

__version__ = "0.1.0"
