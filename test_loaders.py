"""
Family loaders: native reader failures surface as ConversionError with the file named
"""

from types import SimpleNamespace

import pytest

from geoconv_backends import BackendHandle, Backends
from geoconv_errors import ConversionError, InvalidContainerError
from geoconv_formats import describe
from geoconv_import import import_files
from geoconv_job import InputFile
from geoconv_loaders import declares_vertex_normals


class StubHandle(BackendHandle):
    """A handle that serves prepared modules instead of importing them."""

    def __init__(self, family, modules):
        super().__init__(family, tuple(modules))
        self.stub_modules = modules

    def load(self):
        return self.stub_modules


def _failing_mesher(*args):
    raise RuntimeError("Standard_Failure: BRepMesh")


def _brep_modules(mesher):
    shape = SimpleNamespace(IsNull=lambda: False)
    return {
        "OCP.TopoDS": SimpleNamespace(TopoDS_Shape=lambda: shape),
        "OCP.BRep": SimpleNamespace(BRep_Builder=lambda: object()),
        "OCP.BRepTools": SimpleNamespace(BRepTools=SimpleNamespace(Read_s=lambda s, path, builder: True)),
        "OCP.BRepMesh": SimpleNamespace(BRepMesh_IncrementalMesh=mesher),
    }


def test_tessellation_failure_is_wrapped():
    backends = Backends(brep=StubHandle("brep", _brep_modules(_failing_mesher)))
    with pytest.raises(ConversionError) as exc:
        import_files([InputFile("part.brep", b"DBRep_DrawableShape")], "brep", backends=backends)
    assert "part.brep" in str(exc.value)
    assert isinstance(exc.value.__cause__, RuntimeError)


class _CorruptModel:
    InstanceDefinitions = []
    Layers = []

    @property
    def Objects(self):
        raise RuntimeError("object table is corrupt")


def _rhino_module(model):
    return SimpleNamespace(File3dm=SimpleNamespace(Read=lambda path: model))


def test_rhino_walk_failure_is_wrapped():
    backends = Backends(rhino=StubHandle("rhino", {"rhino3dm": _rhino_module(_CorruptModel())}))
    with pytest.raises(ConversionError) as exc:
        import_files([InputFile("model.3dm", b"3D Geometry File Format")], "3dm", backends=backends)
    assert "model.3dm" in str(exc.value)
    assert isinstance(exc.value.__cause__, RuntimeError)


def test_unreadable_rhino_file():
    backends = Backends(rhino=StubHandle("rhino", {"rhino3dm": _rhino_module(None)}))
    with pytest.raises(InvalidContainerError):
        import_files([InputFile("model.3dm", b"not a model")], "3dm", backends=backends)


@pytest.mark.parametrize("format_id,data,expected", [
    ("obj", b"v 0 0 0\nvn 0 0 1\n", True),
    ("obj", b"# vn in a comment\nv 0 0 0\n", False),
    ("ply", b"ply\nformat ascii 1.0\nelement vertex 1\nproperty float x\nproperty float nx\nend_header\n", True),
    ("ply", b"ply\nformat ascii 1.0\nelement vertex 1\nproperty float x\nend_header\nnx\n", False),
    ("stl", b"solid cube\n  facet normal 0 0 1\n", False),
])
def test_declares_vertex_normals(format_id, data, expected):
    assert declares_vertex_normals(describe(format_id), data) is expected
