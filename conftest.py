"""
Shared fixtures: a 2x2x2 cube centred on the origin in several source formats.
"""

import os
import sys

import pytest

current_dir = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, current_dir)

from geoconv_backends import Backends, BackendHandle  # noqa: E402
from geoconv_job import InputFile  # noqa: E402

CUBE_CORNERS = [
    (-1.0, -1.0, -1.0),
    (1.0, -1.0, -1.0),
    (1.0, 1.0, -1.0),
    (-1.0, 1.0, -1.0),
    (-1.0, -1.0, 1.0),
    (1.0, -1.0, 1.0),
    (1.0, 1.0, 1.0),
    (-1.0, 1.0, 1.0),
]

# Counter-clockwise seen from outside, zero-based
CUBE_QUADS = [
    (0, 3, 2, 1),  # -z
    (4, 5, 6, 7),  # +z
    (0, 1, 5, 4),  # -y
    (2, 3, 7, 6),  # +y
    (1, 2, 6, 5),  # +x
    (0, 4, 7, 3),  # -x
]


def _cube_obj() -> bytes:
    lines = ["# cube", "o Cube"]
    lines += [f"v {x} {y} {z}" for x, y, z in CUBE_CORNERS]
    lines += ["f " + " ".join(str(i + 1) for i in quad) for quad in CUBE_QUADS]
    return ("\n".join(lines) + "\n").encode("ascii")


def _cube_stl() -> bytes:
    lines = ["solid cube"]
    for a, b, c, d in CUBE_QUADS:
        for tri in ((a, b, c), (a, c, d)):
            lines.append("  facet normal 0 0 0")
            lines.append("    outer loop")
            for i in tri:
                x, y, z = CUBE_CORNERS[i]
                lines.append(f"      vertex {x} {y} {z}")
            lines.append("    endloop")
            lines.append("  endfacet")
    lines.append("endsolid cube")
    return ("\n".join(lines) + "\n").encode("ascii")


def _cube_xfile() -> bytes:
    vertices = ",\n".join(f"    {x};{y};{z};" for x, y, z in CUBE_CORNERS)
    faces = ",\n".join(f"    4;{a},{b},{c},{d};" for a, b, c, d in CUBE_QUADS)
    return f"""xof 0303txt 0032
// cube moved 5 units along x
template Header {{
 <3D82AB43-62DA-11cf-AB39-0020AF71E433>
 WORD major;
 WORD minor;
 DWORD flags;
}}

Header {{
 1;
 0;
 1;
}}

Frame Cube {{
  FrameTransformMatrix {{
    1.000000,0.000000,0.000000,0.000000,
    0.000000,1.000000,0.000000,0.000000,
    0.000000,0.000000,1.000000,0.000000,
    5.000000,0.000000,0.000000,1.000000;;
  }}
  Mesh CubeMesh {{
    8;
{vertices};
    6;
{faces};
    MeshMaterialList {{
      1;
      6;
      0,0,0,0,0,0;;
      Material Red {{
        1.000000;0.000000;0.000000;1.000000;;
        0.000000;
        0.000000;0.000000;0.000000;;
        0.000000;0.000000;0.000000;;
      }}
    }}
  }}
}}
""".encode("ascii")


@pytest.fixture
def cube_obj():
    return InputFile("cube.obj", _cube_obj())


@pytest.fixture
def cube_stl():
    return InputFile("cube.stl", _cube_stl())


@pytest.fixture
def cube_xfile():
    return InputFile("cube.x", _cube_xfile())


@pytest.fixture
def backends():
    """Fresh handles per test so cached backend failures do not leak between tests."""
    return Backends()


@pytest.fixture
def broken_backends():
    missing = ("geoconv_missing_native_module",)
    return Backends(
        brep=BackendHandle("brep", missing),
        draco=BackendHandle("draco", missing),
        rhino=BackendHandle("rhino", missing),
        collada=BackendHandle("collada", missing),
    )
