"""
geoconv Import Pipeline
ResolveFiles -> ClassifyFormat -> Dispatch -> AssembleScene.
Turns a set of input files in any readable format into the canonical GLB container.
"""

import logging
from typing import List, Optional, Sequence, Tuple, Union

from geoconv_backends import Backends, default_backends
from geoconv_config import ConversionSettings
from geoconv_errors import InvalidContainerError
from geoconv_formats import CANONICAL_FORMAT, FormatDescriptor, has_magic, require_input
from geoconv_job import ConversionJob, InputFile, resolve_primary
from geoconv_loaders import load
from geoconv_scene import RawNode, Scene, assemble_scene, deserialize_binary, serialize_binary

logger = logging.getLogger(__name__)


def resolve_files(job: ConversionJob) -> Tuple[InputFile, List[InputFile]]:
    primary, companions = resolve_primary(job)
    logger.debug(f"Primary file {primary.name}, {len(companions)} companions")
    return primary, companions


def classify_format(job: ConversionJob) -> FormatDescriptor:
    descriptor = require_input(job.source_format)
    logger.debug(f"Source .{descriptor.id} belongs to the {descriptor.family.value} family")
    return descriptor


def passes_through(job: ConversionJob, descriptor: FormatDescriptor) -> bool:
    """Canonical input needs no loading unless the settings move it out of glTF conventions."""
    return descriptor.id == CANONICAL_FORMAT and not job.settings.transforms_gltf


def dispatch(job: ConversionJob, descriptor: FormatDescriptor, primary: InputFile,
             companions: Sequence[InputFile], backends: Backends) -> Union[bytes, List[RawNode]]:
    """Hand the files to the family loader.

    Canonical input that passes through is returned as bytes once its magic tag checks out.
    """
    if descriptor.id == CANONICAL_FORMAT and not has_magic(descriptor, primary.data):
        raise InvalidContainerError(descriptor.id, "missing glTF magic tag")
    if passes_through(job, descriptor):
        return bytes(primary.data)
    return load(descriptor, primary, companions, job.settings, backends)


def assemble(job: ConversionJob, descriptor: FormatDescriptor, roots: Sequence[RawNode]) -> Scene:
    weld = job.settings.weld_vertices
    if weld is None:
        weld = descriptor.shared_topology
    scene = assemble_scene(roots, weld=weld)
    logger.debug(f"Assembled {len(scene.meshes)} meshes (weld={weld})")
    return scene


def import_scene(job: ConversionJob, backends: Optional[Backends] = None) -> Scene:
    """Run the import pipeline and return the assembled Scene."""
    backends = backends or default_backends()
    primary, companions = resolve_files(job)
    descriptor = classify_format(job)
    result = dispatch(job, descriptor, primary, companions, backends)
    if passes_through(job, descriptor):
        return deserialize_binary(result)
    return assemble(job, descriptor, result)


def import_job(job: ConversionJob, backends: Optional[Backends] = None) -> bytes:
    backends = backends or default_backends()
    primary, companions = resolve_files(job)
    descriptor = classify_format(job)
    result = dispatch(job, descriptor, primary, companions, backends)
    if passes_through(job, descriptor):
        logger.info(f"{primary.name} is already canonical, passing through")
        return result
    scene = assemble(job, descriptor, result)
    data = serialize_binary(scene)
    logger.info(f"Imported {primary.name}: {len(scene.meshes)} meshes, "
                f"{sum(m.face_count for m in scene.meshes)} triangles, {len(data)} bytes")
    return data


def import_files(files: Sequence[InputFile], source_format: str, settings: Optional[ConversionSettings] = None,
                 backends: Optional[Backends] = None) -> bytes:
    """Convert input files into canonical GLB bytes."""
    job = ConversionJob.create(files, source_format, settings=settings)
    return import_job(job, backends)
