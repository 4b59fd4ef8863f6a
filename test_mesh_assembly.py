"""
Mesh assembler: triangulation, normals, welding and geometry coercion errors
"""

import numpy as np
import pytest
import trimesh

from geoconv_errors import GeometryConversionError
from geoconv_mesh import (
    Mesh,
    PolygonSoup,
    assemble_mesh,
    assemble_meshes,
    compute_face_normals,
    to_polygon_soup,
    triangulate_faces,
)
from conftest import CUBE_CORNERS, CUBE_QUADS


def test_fan_triangulation_of_mixed_faces():
    triangles, skipped = triangulate_faces([[0, 1, 2], [0, 1, 2, 3], [0, 1, 2, 3, 4], [0, 1]])
    assert skipped == 1
    # t = sum(n_i - 2)
    assert len(triangles) == 1 + 2 + 3
    assert triangles[1].tolist() == [0, 1, 2]
    assert triangles[2].tolist() == [0, 2, 3]
    assert triangles[-1].tolist() == [0, 3, 4]


def test_triangulation_of_quad_array():
    triangles, skipped = triangulate_faces(np.array(CUBE_QUADS))
    assert skipped == 0
    assert triangles.shape == (12, 3)
    assert triangles[0].tolist() == [0, 3, 2]
    assert triangles[1].tolist() == [0, 2, 1]


def test_face_normals():
    positions = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [2, 0, 0]], dtype=np.float64)
    normals = compute_face_normals(positions, np.array([[0, 1, 2], [0, 1, 3]]))
    assert np.allclose(normals[0], [0, 0, 1])
    # collinear corners give a zero normal instead of NaN
    assert np.allclose(normals[1], [0, 0, 0])


def test_unshared_vertices_without_welding():
    mesh = assemble_mesh(PolygonSoup(CUBE_CORNERS, CUBE_QUADS))
    assert mesh.face_count == 12
    assert mesh.vertex_count == 36
    assert mesh.normals.shape == (36, 3)
    assert mesh.indices.max() < mesh.vertex_count


def test_welding_merges_coplanar_corners():
    mesh = assemble_mesh(PolygonSoup(CUBE_CORNERS, CUBE_QUADS), weld=True)
    assert mesh.face_count == 12
    assert mesh.vertex_count == 24
    assert np.allclose(np.linalg.norm(mesh.normals, axis=1), 1.0)


def test_source_normals_pass_through():
    normals = np.array(CUBE_CORNERS) / np.sqrt(3.0)
    mesh = assemble_mesh(PolygonSoup(CUBE_CORNERS, CUBE_QUADS, normals))
    assert mesh.vertex_count == 8
    assert np.allclose(mesh.normals, normals)


def test_mismatched_source_normals_are_ignored():
    mesh = assemble_mesh(PolygonSoup(CUBE_CORNERS, CUBE_QUADS, [(0.0, 0.0, 1.0)]))
    assert mesh.vertex_count == 36


def test_coerces_trimesh_and_mappings():
    box = trimesh.creation.box(extents=(2, 2, 2))
    soup = to_polygon_soup(box)
    assert soup.positions.shape == (8, 3)
    mesh = assemble_mesh({"vertices": CUBE_CORNERS, "faces": CUBE_QUADS, "name": "cube"})
    assert mesh.name == "cube"
    assert mesh.face_count == 12
    assert assemble_mesh((CUBE_CORNERS, CUBE_QUADS)).face_count == 12


def test_unconvertible_object_reports_index_and_type():
    with pytest.raises(GeometryConversionError) as exc:
        assemble_meshes([PolygonSoup(CUBE_CORNERS, CUBE_QUADS), object()])
    assert exc.value.index == 1
    assert exc.value.source_type == "object"


def test_out_of_range_face_index():
    with pytest.raises(GeometryConversionError) as exc:
        assemble_mesh(PolygonSoup(CUBE_CORNERS, [(0, 1, 8)]), index=3)
    assert exc.value.index == 3


def test_bad_position_shape():
    with pytest.raises(GeometryConversionError):
        assemble_mesh(PolygonSoup([(0.0, 1.0)], [(0, 0, 0)]))


def test_transform_bakes_translation_and_keeps_winding():
    mesh = assemble_mesh(PolygonSoup(CUBE_CORNERS, CUBE_QUADS), weld=True)
    matrix = np.eye(4)
    matrix[:3, 3] = [10.0, 0.0, 0.0]
    moved = mesh.transformed(matrix)
    assert np.allclose(moved.bounds(), [[9, -1, -1], [11, 1, 1]])
    assert np.array_equal(moved.indices, mesh.indices)
    assert np.allclose(moved.normals, mesh.normals)


def test_mirror_transform_flips_winding():
    mesh = Mesh(np.array(CUBE_CORNERS[:3]), np.array([[0, 1, 2]]))
    mirrored = mesh.transformed(np.diag([-1.0, 1.0, 1.0, 1.0]))
    assert mirrored.indices.tolist() == [[2, 1, 0]]


@pytest.mark.parametrize("faces", [np.arange(6), [[0, 1, None]], [["a", "b", "c"]]])
def test_malformed_faces_report_index(faces):
    with pytest.raises(GeometryConversionError) as exc:
        assemble_mesh(PolygonSoup(CUBE_CORNERS, faces), index=3)
    assert exc.value.index == 3
    assert exc.value.source_type == "PolygonSoup"


def test_empty_flat_face_array_yields_no_triangles():
    triangles, skipped = triangulate_faces(np.zeros(0, dtype=np.int64))
    assert triangles.shape == (0, 3)
    assert skipped == 0


def test_trimesh_coercion_ignores_computed_normals():
    box = trimesh.creation.box(extents=(2, 2, 2))
    # trimesh fills in smoothed normals on first access
    assert box.vertex_normals.shape == (8, 3)
    assert to_polygon_soup(box).vertex_normals is None
    assert assemble_mesh(box, weld=True).vertex_count == 24
