"""
geoconv Family Writers
Encode a canonical Scene into one or more output files for a target format.
"""

import logging
from typing import Callable, Dict, List, Tuple

import numpy as np
import trimesh

from geoconv_backends import Backends
from geoconv_config import ConversionSettings
from geoconv_errors import ConversionError
from geoconv_job import OutputFile
from geoconv_scene import (
    Scene,
    gltf_export_matrix,
    serialize_binary,
    serialize_gltf,
    to_meshes,
    to_trimesh_scene,
    transform_scene,
)

logger = logging.getLogger(__name__)

Writer = Callable[[Scene, ConversionSettings, Backends], List[OutputFile]]


def output_name(settings: ConversionSettings, extension: str) -> str:
    return f"{settings.output_basename}.{extension}"


def flatten_scene(scene: Scene) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Bake every instance into world space and append them into one vertex/face/normal set."""
    vertices, faces, normals = [], [], []
    offset = 0
    for mesh in to_meshes(scene):
        vertices.append(mesh.vertices)
        faces.append(mesh.indices + offset)
        if mesh.normals is not None:
            normals.append(mesh.normals)
        else:
            normals.append(np.zeros_like(mesh.vertices))
        offset += mesh.vertex_count
    if not vertices:
        return np.zeros((0, 3)), np.zeros((0, 3), dtype=np.int64), np.zeros((0, 3))
    return np.vstack(vertices), np.vstack(faces), np.vstack(normals)


def _as_bytes(exported) -> bytes:
    if isinstance(exported, str):
        return exported.encode("utf-8")
    return bytes(exported)


def _to_gltf_conventions(scene: Scene, settings: ConversionSettings) -> Scene:
    matrix = gltf_export_matrix(settings)
    return scene if matrix is None else transform_scene(scene, matrix)


def write_glb(scene: Scene, settings: ConversionSettings, backends: Backends) -> List[OutputFile]:
    return [OutputFile(output_name(settings, "glb"), serialize_binary(_to_gltf_conventions(scene, settings)))]


def write_gltf(scene: Scene, settings: ConversionSettings, backends: Backends) -> List[OutputFile]:
    return [OutputFile(output_name(settings, "gltf"), serialize_gltf(_to_gltf_conventions(scene, settings)))]


def _material_label(name: str, index: int, taken: set) -> str:
    label = "_".join(name.split()) or f"material_{index}"
    while label in taken:
        label = f"{label}_{index}"
    taken.add(label)
    return label


def write_obj(scene: Scene, settings: ConversionSettings, backends: Backends) -> List[OutputFile]:
    """Wavefront OBJ with world-space vertices and normals, plus an MTL file when materials exist.

    Layout per object: ``o name``, its ``v`` and ``vn`` rows, ``usemtl`` and ``f v//vn`` faces.
    """
    mtl_name = output_name(settings, "mtl")
    taken = set()
    labels = [_material_label(m.name, i, taken) for i, m in enumerate(scene.materials)]

    lines = ["# geoconv OBJ export"]
    if scene.materials:
        lines.append(f"mtllib {mtl_name}")
    offset = 1
    for i, mesh in enumerate(to_meshes(scene)):
        lines.append(f"o {'_'.join((mesh.name or f'mesh_{i}').split())}")
        lines.extend(f"v {x:.6f} {y:.6f} {z:.6f}" for x, y, z in mesh.vertices)
        has_normals = mesh.normals is not None
        if has_normals:
            lines.extend(f"vn {x:.6f} {y:.6f} {z:.6f}" for x, y, z in mesh.normals)
        if mesh.material is not None and mesh.material < len(labels):
            lines.append(f"usemtl {labels[mesh.material]}")
        for face in mesh.indices + offset:
            if has_normals:
                lines.append("f " + " ".join(f"{v}//{v}" for v in face))
            else:
                lines.append("f " + " ".join(str(v) for v in face))
        offset += mesh.vertex_count
    outputs = [OutputFile(output_name(settings, "obj"), ("\n".join(lines) + "\n").encode("utf-8"))]

    if scene.materials:
        mtl = ["# geoconv MTL export"]
        for label, material in zip(labels, scene.materials):
            r, g, b, a = material.base_color
            mtl.append("")
            mtl.append(f"newmtl {label}")
            mtl.append(f"Kd {r:.6f} {g:.6f} {b:.6f}")
            mtl.append(f"d {a:.6f}")
            mtl.append(f"Pm {material.metallic:.6f}")
            mtl.append(f"Pr {material.roughness:.6f}")
        outputs.append(OutputFile(mtl_name, ("\n".join(mtl) + "\n").encode("utf-8")))
    return outputs


def _flat_writer(file_type: str) -> Writer:
    """STL, PLY and OFF hold one mesh without hierarchy or materials."""

    def write(scene: Scene, settings: ConversionSettings, backends: Backends) -> List[OutputFile]:
        vertices, faces, normals = flatten_scene(scene)
        mesh = trimesh.Trimesh(vertices=vertices, faces=faces, process=False)
        if len(normals) and np.any(normals):
            mesh.vertex_normals = normals
        data = _as_bytes(mesh.export(file_type=file_type))
        logger.debug(f"Wrote {file_type}: {len(vertices)} vertices, {len(faces)} faces")
        return [OutputFile(output_name(settings, file_type), data)]

    return write


def _scene_writer(file_type: str) -> Writer:
    """Formats keeping the node hierarchy, exported from a trimesh scene."""

    def write(scene: Scene, settings: ConversionSettings, backends: Backends) -> List[OutputFile]:
        if file_type == "dae":
            backends.collada.load()
        data = _as_bytes(to_trimesh_scene(scene).export(file_type=file_type))
        return [OutputFile(output_name(settings, file_type), data)]

    return write


def write_draco(scene: Scene, settings: ConversionSettings, backends: Backends) -> List[OutputFile]:
    DracoPy = backends.draco.module("DracoPy")
    vertices, faces, _ = flatten_scene(scene)
    data = DracoPy.encode(vertices.astype(np.float32), faces.astype(np.uint32))
    return [OutputFile(output_name(settings, "drc"), bytes(data))]


WRITERS: Dict[str, Writer] = {
    "glb": write_glb,
    "gltf": write_gltf,
    "obj": write_obj,
    "stl": _flat_writer("stl"),
    "ply": _flat_writer("ply"),
    "off": _flat_writer("off"),
    "3mf": _scene_writer("3mf"),
    "dae": _scene_writer("dae"),
    "drc": write_draco,
}


def write(scene: Scene, target: str, settings: ConversionSettings, backends: Backends) -> List[OutputFile]:
    writer = WRITERS.get(target)
    if writer is None:
        raise ConversionError(f"No writer registered for .{target}")
    try:
        return writer(scene, settings, backends)
    except ConversionError:
        raise
    except Exception as e:
        raise ConversionError(f"Failed to write .{target} output: {e}") from e
