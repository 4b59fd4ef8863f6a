"""
Rhino .3dm import: object walk over stand-in rhino3dm types, plus a real
file round trip when rhino3dm is installed.
"""

from types import SimpleNamespace

import numpy as np
import pytest

from geoconv_import import import_scene
from geoconv_job import ConversionJob, InputFile
from geoconv_loaders import MAX_INSTANCE_DEPTH, rhino_nodes
from geoconv_scene import assemble_scene, inspect_scene
from conftest import CUBE_CORNERS, CUBE_QUADS


class Mesh:
    def __init__(self):
        self.Vertices = [SimpleNamespace(X=x, Y=y, Z=z) for x, y, z in CUBE_CORNERS]
        self.Faces = [tuple(quad) for quad in CUBE_QUADS]
        self.Normals = []


class InstanceReference:
    def __init__(self, definition_id, translation=(0.0, 0.0, 0.0)):
        self.ParentIdefId = definition_id
        matrix = np.eye(4)
        matrix[:3, 3] = translation
        self.Xform = SimpleNamespace(**{f"M{r}{c}": matrix[r, c] for r in range(4) for c in range(4)})


class Brep:
    pass


class Extrusion:
    pass


rhino3dm = SimpleNamespace(
    Mesh=Mesh,
    InstanceReference=InstanceReference,
    Brep=Brep,
    Extrusion=Extrusion,
    ObjectColorSource=SimpleNamespace(ColorFromLayer=0, ColorFromObject=1),
)

BLUE_LAYER = SimpleNamespace(Color=(0, 0, 255, 255))


def _object(object_id, geometry, in_definition=False, name="", color_source=0):
    attributes = SimpleNamespace(Id=object_id, Name=name, IsInstanceDefinitionObject=in_definition,
                                 ColorSource=color_source, ObjectColor=(255, 0, 0, 255), LayerIndex=0)
    return SimpleNamespace(Geometry=geometry, Attributes=attributes)


def _definition(definition_id, member_ids):
    return SimpleNamespace(Id=definition_id, GetObjectIds=lambda: list(member_ids))


def _model(objects, definitions=()):
    return SimpleNamespace(Objects=list(objects), InstanceDefinitions=list(definitions), Layers=[BLUE_LAYER])


def test_mesh_object_uses_object_colour():
    model = _model([_object("a", Mesh(), name="cube", color_source=1)])
    roots = rhino_nodes(rhino3dm, model)
    assert [r.name for r in roots] == ["cube"]
    assert roots[0].material.base_color == (1.0, 0.0, 0.0, 1.0)
    assert inspect_scene(assemble_scene(roots)).face_count == 12


def test_instance_reference_expands_definition():
    model = _model(
        [
            _object("member", Mesh(), in_definition=True),
            _object("ref", InstanceReference("block", (10.0, 0.0, 0.0)), name="placed"),
        ],
        [_definition("block", ["member"])],
    )
    roots = rhino_nodes(rhino3dm, model)
    # definition members are only reachable through references
    assert [r.name for r in roots] == ["placed"]
    assert len(roots[0].children) == 1
    # layer colour applies when the object does not override it
    assert roots[0].children[0].material.base_color == (0.0, 0.0, 1.0, 1.0)
    assert np.allclose(inspect_scene(assemble_scene(roots)).center, [10, 0, 0])


def test_self_referencing_definition_stops_at_depth_limit():
    model = _model(
        [
            _object("inner", InstanceReference("loop"), in_definition=True),
            _object("outer", InstanceReference("loop")),
        ],
        [_definition("loop", ["inner"])],
    )
    roots = rhino_nodes(rhino3dm, model)
    depth = 0
    node = roots[0]
    while node.children:
        depth += 1
        node = node.children[0]
    assert depth + 1 == MAX_INSTANCE_DEPTH


def test_missing_definition_is_skipped():
    roots = rhino_nodes(rhino3dm, _model([_object("ref", InstanceReference("gone"))]))
    assert roots == []


def test_real_rhino_file(tmp_path, backends):
    real = pytest.importorskip("rhino3dm")
    model = real.File3dm()
    mesh = real.Mesh()
    for x, y, z in CUBE_CORNERS:
        mesh.Vertices.Add(x, y, z)
    for a, b, c, d in CUBE_QUADS:
        mesh.Faces.AddFace(a, b, c, d)
    attributes = real.ObjectAttributes()
    attributes.Name = "cube"
    attributes.ColorSource = real.ObjectColorSource.ColorFromObject
    attributes.ObjectColor = (255, 0, 0, 255)
    model.Objects.AddMesh(mesh, attributes)
    path = str(tmp_path / "cube.3dm")
    assert model.Write(path, 7)
    with open(path, "rb") as f:
        data = f.read()

    scene = import_scene(ConversionJob.create([InputFile("cube.3dm", data)], "3dm"), backends)
    report = inspect_scene(scene)
    assert report.face_count == 12
    assert np.allclose(report.size, [2, 2, 2])
    assert np.allclose(scene.materials[0].base_color, (1.0, 0.0, 0.0, 1.0))
