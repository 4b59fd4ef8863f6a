"""
Export pipeline: path selection and the per-format writers
"""

import io

import numpy as np
import pytest
import trimesh

from geoconv_config import ConversionSettings
from geoconv_errors import InvalidContainerError, UnsupportedFormatError
from geoconv_export import ExportPath, export_canonical, export_job, export_scene, select_path
from geoconv_import import import_files
from geoconv_job import ConversionJob, InputFile
from geoconv_mesh import PolygonSoup
from geoconv_scene import Material, RawNode, assemble_scene
from conftest import CUBE_CORNERS, CUBE_QUADS


def _red_cube_scene():
    red = Material("red paint", (1.0, 0.0, 0.0, 1.0), metallic=0.25, roughness=0.5)
    return assemble_scene([RawNode("cube", geometry=PolygonSoup(CUBE_CORNERS, CUBE_QUADS), material=red)],
                          weld=True)


def _obj_counts(data: bytes):
    lines = data.decode("utf-8").splitlines()
    return sum(1 for l in lines if l.startswith("v ")), sum(1 for l in lines if l.startswith("f "))


def test_path_selection(cube_obj, cube_stl, cube_xfile, backends):
    glb = InputFile("scene.glb", import_files([cube_obj], "obj", backends=backends))
    assert select_path(ConversionJob.create([glb], "glb", "glb")) == ExportPath.IDENTITY
    assert select_path(ConversionJob.create([cube_obj], "obj", "stl")) == ExportPath.DIRECT
    assert select_path(ConversionJob.create([cube_stl], "stl", "stl")) == ExportPath.DIRECT
    assert select_path(ConversionJob.create([cube_xfile], "x", "obj")) == ExportPath.HUB
    assert select_path(ConversionJob.create([cube_obj], "obj", "glb")) == ExportPath.HUB
    assert select_path(ConversionJob.create([InputFile("part.step", b"")], "step", "obj")) == ExportPath.HUB


def test_identity_needs_matching_magic():
    job = ConversionJob.create([InputFile("scene.glb", b"GLTF lowercase mismatch")], "glb", "glb")
    assert select_path(job) == ExportPath.HUB


def test_identity_returns_input_bytes(cube_obj, backends):
    data = import_files([cube_obj], "obj", backends=backends)
    outputs = export_job(ConversionJob.create([InputFile("scene.glb", data)], "glb", "glb"), backends)
    assert len(outputs) == 1
    assert outputs[0].name == "model.glb"
    assert outputs[0].data is data


def test_obj_writer_with_materials():
    outputs = export_scene(_red_cube_scene(), "obj")
    assert [o.name for o in outputs] == ["model.obj", "model.mtl"]
    obj = outputs[0].data.decode("utf-8")
    assert "mtllib model.mtl" in obj
    assert "usemtl red_paint" in obj
    assert _obj_counts(outputs[0].data) == (24, 12)

    mtl = outputs[1].data.decode("utf-8")
    assert "newmtl red_paint" in mtl
    assert "Kd 1.000000 0.000000 0.000000" in mtl
    assert "Pm 0.250000" in mtl
    assert "Pr 0.500000" in mtl


def test_output_basename():
    settings = ConversionSettings(output_basename="bracket")
    outputs = export_scene(_red_cube_scene(), "stl", settings)
    assert [o.name for o in outputs] == ["bracket.stl"]


@pytest.mark.parametrize("file_type", ["stl", "ply", "off"])
def test_flat_writers_keep_triangles(file_type):
    outputs = export_scene(_red_cube_scene(), file_type)
    assert len(outputs) == 1
    mesh = trimesh.load(io.BytesIO(outputs[0].data), file_type=file_type, force="mesh")
    assert len(mesh.faces) == 12
    assert np.allclose(mesh.extents, [2, 2, 2])


def test_gltf_writer_is_single_file():
    outputs = export_scene(_red_cube_scene(), "gltf")
    assert [o.name for o in outputs] == ["model.gltf"]
    assert b"data:application/octet-stream;base64," in outputs[0].data


def test_3mf_writer():
    outputs = export_scene(_red_cube_scene(), "3mf")
    assert outputs[0].name == "model.3mf"
    assert outputs[0].data[:2] == b"PK"


def test_export_canonical_identity(cube_obj, backends):
    data = import_files([cube_obj], "obj", backends=backends)
    outputs = export_canonical(data, "glb")
    assert outputs[0].data is data


def test_export_canonical_rejects_other_payloads():
    with pytest.raises(InvalidContainerError):
        export_canonical(b"solid cube", "obj")


def test_export_canonical_unsupported_target(cube_obj, backends):
    data = import_files([cube_obj], "obj", backends=backends)
    with pytest.raises(UnsupportedFormatError):
        export_canonical(data, "step")


def test_direct_obj_to_obj(cube_obj, backends):
    outputs = export_job(ConversionJob.create([cube_obj], "obj", "obj"), backends)
    assert [o.name for o in outputs] == ["model.obj"]
    assert _obj_counts(outputs[0].data) == (24, 12)


def test_direct_stl_to_stl_keeps_vertex_layout(cube_stl, backends):
    outputs = export_job(ConversionJob.create([cube_stl], "stl", "stl"), backends)
    mesh = trimesh.load(io.BytesIO(outputs[0].data), file_type="stl", force="mesh", process=False)
    assert len(mesh.faces) == 12
    assert len(mesh.vertices) == 36


def test_hub_xfile_to_obj_carries_material(cube_xfile, backends):
    outputs = export_job(ConversionJob.create([cube_xfile], "x", "obj"), backends)
    assert [o.name for o in outputs] == ["model.obj", "model.mtl"]
    assert "Kd 1.000000 0.000000 0.000000" in outputs[1].data.decode("utf-8")
    assert _obj_counts(outputs[0].data) == (24, 12)
