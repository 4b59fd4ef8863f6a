"""
geoconv Export Pipeline
ClassifyTargetFormat -> SelectPath -> Write.
Three strategies, tried in order: identity pass-through, direct same-family
re-encoding, and the canonical hub.
"""

import logging
from enum import Enum
from typing import List, Optional

from geoconv_backends import Backends, default_backends
from geoconv_config import ConversionSettings
from geoconv_errors import InvalidContainerError
from geoconv_formats import CANONICAL_FORMAT, FormatFamily, describe, has_magic, require_input, require_output
from geoconv_import import assemble, import_job, resolve_files
from geoconv_job import ConversionJob, OutputFile
from geoconv_loaders import load
from geoconv_scene import Scene, deserialize_binary
from geoconv_writers import output_name, write

logger = logging.getLogger(__name__)


class ExportPath(Enum):
    IDENTITY = "identity"
    DIRECT = "direct"
    HUB = "hub"


def select_path(job: ConversionJob) -> ExportPath:
    """Pick the cheapest correct strategy for a job."""
    source = describe(job.source_format)
    target = describe(job.target_format)
    if source is None or target is None:
        return ExportPath.HUB
    if source.id == target.id and source.magic is not None:
        primary, _ = resolve_files(job)
        if has_magic(source, primary.data):
            return ExportPath.IDENTITY
    if source.family == FormatFamily.MESH and target.family == FormatFamily.MESH:
        return ExportPath.DIRECT
    return ExportPath.HUB


def export_scene(scene: Scene, target_format: str, settings: Optional[ConversionSettings] = None,
                 backends: Optional[Backends] = None) -> List[OutputFile]:
    """Write a Scene with the target format's writer."""
    descriptor = require_output(target_format)
    outputs = write(scene, descriptor.id, settings or ConversionSettings(), backends or default_backends())
    logger.debug(f"Wrote {len(outputs)} .{descriptor.id} files")
    return outputs


def export_canonical(data: bytes, target_format: str, settings: Optional[ConversionSettings] = None,
                     backends: Optional[Backends] = None) -> List[OutputFile]:
    """Export canonical GLB bytes: identity for a GLB target, the hub writer otherwise.

    A GLB target is re-encoded instead when the settings convert glTF axes or units.
    """
    descriptor = require_output(target_format)
    settings = settings or ConversionSettings()
    data = bytes(data)
    if not data.startswith(b"glTF"):
        raise InvalidContainerError(CANONICAL_FORMAT, "missing glTF magic tag")
    if descriptor.id == CANONICAL_FORMAT and not settings.transforms_gltf:
        logger.debug("Canonical target, returning container unchanged")
        return [OutputFile(output_name(settings, CANONICAL_FORMAT), data)]
    return export_scene(deserialize_binary(data), descriptor.id, settings, backends)


def export_direct(job: ConversionJob, backends: Optional[Backends] = None) -> List[OutputFile]:
    """Re-encode within the mesh-interchange family without building the GLB container."""
    backends = backends or default_backends()
    primary, companions = resolve_files(job)
    source = require_input(job.source_format)
    roots = load(source, primary, companions, job.settings, backends)
    return export_scene(assemble(job, source, roots), job.target_format, job.settings, backends)


def export_job(job: ConversionJob, backends: Optional[Backends] = None) -> List[OutputFile]:
    backends = backends or default_backends()
    require_output(job.target_format)
    path = select_path(job)
    logger.info(f"Converting .{job.source_format} -> .{job.target_format} via {path.value} path")
    if path is ExportPath.IDENTITY:
        primary, _ = resolve_files(job)
        return [OutputFile(output_name(job.settings, job.target_format), primary.data)]
    if path is ExportPath.DIRECT:
        return export_direct(job, backends)
    return export_canonical(import_job(job, backends), job.target_format, job.settings, backends)
