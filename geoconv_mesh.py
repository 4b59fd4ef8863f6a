"""
geoconv Mesh Assembler
Turns heterogeneous per-format polygon data into uniform triangle meshes:
fan triangulation of n-gons, per-face normals, optional vertex welding.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import trimesh

from geoconv_errors import GeometryConversionError

logger = logging.getLogger(__name__)

# Decimal places used when deciding two corners are the same vertex
WELD_DECIMALS = 6


@dataclass
class PolygonSoup:
    """Raw geometry as a source format delivers it.

    faces may mix arities (triangles, quads, n-gons) or be an (m, k) index array.
    vertex_normals, when set, are per-vertex smoothed normals from the source.
    """
    positions: Any
    faces: Any
    vertex_normals: Optional[Any] = None
    name: Optional[str] = None


@dataclass
class Mesh:
    vertices: np.ndarray
    indices: np.ndarray
    normals: Optional[np.ndarray] = None
    material: Optional[int] = None
    name: Optional[str] = None

    @property
    def vertex_count(self) -> int:
        return len(self.vertices)

    @property
    def face_count(self) -> int:
        return len(self.indices)

    def bounds(self) -> Optional[np.ndarray]:
        if len(self.vertices) == 0:
            return None
        return np.array([self.vertices.min(axis=0), self.vertices.max(axis=0)])

    def transformed(self, matrix: np.ndarray) -> "Mesh":
        """Return a copy with a 4x4 transform applied to positions and normals."""
        matrix = np.asarray(matrix, dtype=np.float64)
        if np.allclose(matrix, np.eye(4)):
            return Mesh(self.vertices.copy(), self.indices.copy(),
                        None if self.normals is None else self.normals.copy(),
                        self.material, self.name)
        vertices = trimesh.transformations.transform_points(self.vertices, matrix)
        normals = None
        if self.normals is not None:
            normal_matrix = np.linalg.inv(matrix[:3, :3]).T
            normals = _normalize_rows(self.normals @ normal_matrix.T)
        indices = self.indices
        # Mirroring transforms flip the winding
        if np.linalg.det(matrix[:3, :3]) < 0:
            indices = indices[:, ::-1]
        return Mesh(vertices, indices.copy(), normals, self.material, self.name)


def _normalize_rows(vectors: np.ndarray) -> np.ndarray:
    lengths = np.linalg.norm(vectors, axis=1)
    result = np.zeros_like(vectors)
    nonzero = lengths > 0
    result[nonzero] = vectors[nonzero] / lengths[nonzero, None]
    return result


def triangulate_faces(faces: Any) -> Tuple[np.ndarray, int]:
    """Fan-triangulate polygons from their first vertex.

    A face v0..vn becomes (v0,v1,v2), (v0,v2,v3), ... (v0,v[n-2],v[n-1]).
    Correct for convex faces; concave faces may yield overlapping triangles.
    Faces with fewer than 3 vertices are skipped.
    Raises ValueError for a flat index array, TypeError for non-integer indices.

    Returns:
        (triangles as an (t, 3) int64 array, number of skipped faces)
    """
    if isinstance(faces, np.ndarray) and faces.ndim != 2 and faces.size:
        raise ValueError(f"expected a 2-D face array, got shape {faces.shape}")
    if isinstance(faces, np.ndarray) and faces.ndim == 2:
        arity = faces.shape[1]
        if arity < 3:
            return np.zeros((0, 3), dtype=np.int64), len(faces)
        faces = faces.astype(np.int64)
        if arity == 3:
            return faces.reshape(-1, 3), 0
        fans = [faces[:, [0, j, j + 1]] for j in range(1, arity - 1)]
        return np.stack(fans, axis=1).reshape(-1, 3), 0

    triangles = []
    skipped = 0
    for face in faces:
        face = [int(i) for i in face]
        if len(face) < 3:
            skipped += 1
            continue
        for j in range(1, len(face) - 1):
            triangles.append((face[0], face[j], face[j + 1]))
    if not triangles:
        return np.zeros((0, 3), dtype=np.int64), skipped
    return np.array(triangles, dtype=np.int64), skipped


def compute_face_normals(positions: np.ndarray, triangles: np.ndarray) -> np.ndarray:
    """normalize(cross(v1 - v0, v2 - v0)) per triangle; degenerate triangles get a zero normal."""
    if len(triangles) == 0:
        return np.zeros((0, 3), dtype=np.float64)
    v0 = positions[triangles[:, 0]]
    v1 = positions[triangles[:, 1]]
    v2 = positions[triangles[:, 2]]
    return _normalize_rows(np.cross(v1 - v0, v2 - v0))


def to_polygon_soup(obj: Any, index: int = 0) -> PolygonSoup:
    """Coerce a backend geometry object into a PolygonSoup.

    Raises:
        GeometryConversionError: the object has no polygon/face representation
    """
    source_type = type(obj).__name__
    try:
        if isinstance(obj, PolygonSoup):
            soup = obj
        elif isinstance(obj, trimesh.Trimesh):
            # trimesh computes smoothed vertex normals on demand, so only faces are taken
            soup = PolygonSoup(
                positions=np.asarray(obj.vertices),
                faces=np.asarray(obj.faces),
                name=obj.metadata.get("name") if obj.metadata else None,
            )
        elif isinstance(obj, Mapping) and "vertices" in obj and "faces" in obj:
            soup = PolygonSoup(obj["vertices"], obj["faces"], obj.get("normals"), obj.get("name"))
        elif isinstance(obj, (tuple, list)) and len(obj) == 2:
            soup = PolygonSoup(obj[0], obj[1])
        else:
            raise GeometryConversionError(index, source_type, "no polygon or face representation")

        positions = np.asarray(soup.positions, dtype=np.float64)
        if positions.size == 0:
            positions = positions.reshape(0, 3)
        if positions.ndim != 2 or positions.shape[1] != 3:
            raise ValueError(f"expected (n, 3) positions, got shape {positions.shape}")
        faces = soup.faces
        if not isinstance(faces, np.ndarray):
            faces = list(faces)
        normals = soup.vertex_normals
        if normals is not None:
            normals = np.asarray(normals, dtype=np.float64)
            if normals.shape != positions.shape:
                logger.debug(f"Ignoring {len(normals)} source normals for {len(positions)} vertices")
                normals = None
        return PolygonSoup(positions, faces, normals, soup.name)
    except GeometryConversionError:
        raise
    except (TypeError, ValueError, KeyError, IndexError) as e:
        raise GeometryConversionError(index, source_type, str(e)) from e


def _weld(vertices: np.ndarray, normals: np.ndarray, indices: np.ndarray):
    """Merge corners whose position and normal agree, keeping first-occurrence order."""
    if len(vertices) == 0:
        return vertices, normals, indices
    keys = np.round(np.hstack([vertices, normals]), WELD_DECIMALS)
    _, first, inverse = np.unique(keys, axis=0, return_index=True, return_inverse=True)
    inverse = inverse.reshape(-1)
    order = np.argsort(first)
    remap = np.empty(len(order), dtype=np.int64)
    remap[order] = np.arange(len(order))
    keep = first[order]
    return vertices[keep], normals[keep], remap[inverse][indices]


def assemble_mesh(obj: Any, index: int = 0, weld: bool = False,
                  material: Optional[int] = None, name: Optional[str] = None) -> Mesh:
    """Build a triangulated Mesh with normals from any supported geometry object.

    Source per-vertex normals pass through unmodified with shared vertices.
    Otherwise each triangle's three corners receive its face normal; with
    weld=True identical position/normal corners are merged afterwards.
    """
    soup = to_polygon_soup(obj, index)
    positions = soup.positions
    try:
        triangles, skipped = triangulate_faces(soup.faces)
    except (TypeError, ValueError) as e:
        raise GeometryConversionError(index, type(obj).__name__, f"malformed faces: {e}") from e
    if skipped:
        logger.warning(f"Geometry #{index}: skipped {skipped} faces with fewer than 3 vertices")

    if len(triangles) and (triangles.min() < 0 or triangles.max() >= len(positions)):
        raise GeometryConversionError(
            index, type(obj).__name__,
            f"face index out of range for {len(positions)} vertices")

    if soup.vertex_normals is not None:
        vertices = positions.copy()
        normals = soup.vertex_normals.copy()
        indices = triangles
    else:
        face_normals = compute_face_normals(positions, triangles)
        vertices = positions[triangles.reshape(-1)]
        normals = np.repeat(face_normals, 3, axis=0)
        indices = np.arange(len(vertices), dtype=np.int64).reshape(-1, 3)
        if weld:
            vertices, normals, indices = _weld(vertices, normals, indices)

    mesh = Mesh(
        vertices=vertices,
        indices=indices.astype(np.int64).reshape(-1, 3),
        normals=normals,
        material=material,
        name=name or soup.name,
    )
    logger.debug(f"Assembled geometry #{index}: {mesh.vertex_count} vertices, {mesh.face_count} triangles")
    return mesh


def assemble_meshes(objects: Sequence[Any], weld: bool = False) -> List[Mesh]:
    return [assemble_mesh(obj, i, weld=weld) for i, obj in enumerate(objects)]
