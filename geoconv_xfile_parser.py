"""
geoconv DirectX .X Reader
Parser for text and binary (uncompressed) DirectX .x files.
Frames become nodes with their FrameTransformMatrix, meshes are split per material.
"""

import logging
import struct
from typing import Dict, List, Tuple

import numpy as np

from geoconv_errors import InvalidContainerError
from geoconv_mesh import PolygonSoup
from geoconv_scene import Material, RawNode

logger = logging.getLogger(__name__)

_TEXT_DELIMITERS = b" \r\n\t{};,"

# Binary token ids
_TOKEN_NAME = 0x01
_TOKEN_STRING = 0x02
_TOKEN_INTEGER = 0x03
_TOKEN_GUID = 0x05
_TOKEN_INTEGER_LIST = 0x06
_TOKEN_FLOAT_LIST = 0x07
_BINARY_SYMBOLS = {
    0x0a: b"{", 0x0b: b"}", 0x0c: b"(", 0x0d: b")", 0x0e: b"[", 0x0f: b"]",
    0x10: b"<", 0x11: b">", 0x12: b".", 0x13: b",", 0x14: b";",
    0x1f: b"template", 0x28: b"WORD", 0x29: b"DWORD", 0x2a: b"FLOAT", 0x2b: b"DOUBLE",
    0x2c: b"CHAR", 0x2d: b"UCHAR", 0x2e: b"SWORD", 0x2f: b"SDWORD", 0x30: b"void",
    0x31: b"string", 0x32: b"unicode", 0x33: b"cstring", 0x34: b"array",
}


class XMesh:
    """A Mesh data object as read from the file."""

    def __init__(self, name: str):
        self.name = name
        self.positions: List[Tuple[float, float, float]] = []
        self.faces: List[List[int]] = []
        self.normals: List[Tuple[float, float, float]] = []
        self.normal_faces: List[List[int]] = []
        self.face_materials: List[int] = []
        self.materials: List[Material] = []


class XFrame:
    def __init__(self, name: str):
        self.name = name
        self.matrix = np.eye(4)
        self.children: List["XFrame"] = []
        self.meshes: List[XMesh] = []


class XFileParser:
    """DirectX .x parser for 'txt ' and 'bin ' payloads with 32 or 64 bit floats."""

    def __init__(self, buffer: bytes):
        self.buffer = buffer
        self.p = 0
        self.end = len(buffer)
        self.binary_num_count = 0
        self.line_number = 1

        if len(buffer) < 16 or buffer[:4] != b"xof ":
            raise ValueError("Header mismatch, file is not an XFile.")
        self.major_version = int(buffer[4:6])
        self.minor_version = int(buffer[6:8])

        encoding = buffer[8:12]
        if encoding == b"bin ":
            self.is_binary = True
        elif encoding == b"txt ":
            self.is_binary = False
        else:
            raise ValueError(f"Unsupported xfile format {encoding!r}")

        self.float_size = int(buffer[12:16])
        if self.float_size not in (32, 64):
            raise ValueError(f"Unknown float size {self.float_size} specified in xfile header.")
        self.p = 16

        self.frames: List[XFrame] = []
        self.global_meshes: List[XMesh] = []
        self.global_materials: Dict[str, Material] = {}
        self.parse_file()

    # -- object structure --------------------------------------------------

    def parse_file(self):
        while True:
            token = self.next_token()
            if not token:
                break
            if token == b"Frame":
                self.frames.append(self.parse_frame())
            elif token == b"Mesh":
                self.global_meshes.append(self.parse_mesh())
            elif token == b"Material":
                material = self.parse_material()
                self.global_materials[material.name] = material
            else:
                self.skip_data_object()

    def parse_frame(self) -> XFrame:
        frame = XFrame(self.read_head_of_data_object() or f"frame_{len(self.frames)}")
        while True:
            token = self.next_token()
            if not token:
                raise ValueError("Unexpected end of file inside Frame.")
            if token == b"}":
                break
            if token == b"Frame":
                frame.children.append(self.parse_frame())
            elif token == b"FrameTransformMatrix":
                frame.matrix = self.parse_transform_matrix()
            elif token == b"Mesh":
                frame.meshes.append(self.parse_mesh())
            else:
                self.skip_data_object()
        return frame

    def parse_transform_matrix(self) -> np.ndarray:
        self.read_head_of_data_object()
        values = [self.read_float() for _ in range(16)]
        self.test_for_separator()
        self.check_for_closing_brace()
        # DirectX multiplies row vectors, so the stored matrix is the transpose
        return np.array(values, dtype=np.float64).reshape(4, 4).T

    def parse_mesh(self) -> XMesh:
        mesh = XMesh(self.read_head_of_data_object())
        for _ in range(self.read_int()):
            mesh.positions.append(self.read_vector3())
        num_faces = self.read_int()
        for _ in range(num_faces):
            num_indices = self.read_int()
            mesh.faces.append([self.read_int() for _ in range(num_indices)])
            self.test_for_separator()

        while True:
            token = self.next_token()
            if not token:
                raise ValueError("Unexpected end of file inside Mesh.")
            if token == b"}":
                break
            if token == b"MeshNormals":
                self.parse_mesh_normals(mesh)
            elif token == b"MeshMaterialList":
                self.parse_mesh_material_list(mesh)
            else:
                # MeshTextureCoords, VertexDuplicationIndices, skin data...
                self.skip_data_object()
        return mesh

    def parse_mesh_normals(self, mesh: XMesh):
        self.read_head_of_data_object()
        for _ in range(self.read_int()):
            mesh.normals.append(self.read_vector3())
        for _ in range(self.read_int()):
            num_indices = self.read_int()
            mesh.normal_faces.append([self.read_int() for _ in range(num_indices)])
            self.test_for_separator()
        self.check_for_closing_brace()

    def parse_mesh_material_list(self, mesh: XMesh):
        self.read_head_of_data_object()
        self.read_int()  # material count, implied by the objects that follow
        num_indices = self.read_int()
        mesh.face_materials = [self.read_int() for _ in range(num_indices)]
        self.test_for_separator()

        while True:
            token = self.next_token()
            if not token:
                raise ValueError("Unexpected end of file inside MeshMaterialList.")
            if token == b"}":
                break
            if token == b"{":
                # Reference to a material declared at file level
                name = self.next_token().decode("utf-8", errors="replace")
                self.check_for_closing_brace()
                material = self.global_materials.get(name)
                if material is None:
                    logger.warning(f"Material reference '{name}' not declared, using default")
                    material = Material(name=name)
                mesh.materials.append(material)
            elif token == b"Material":
                mesh.materials.append(self.parse_material())
            else:
                self.skip_data_object()

    def parse_material(self) -> Material:
        name = self.read_head_of_data_object() or f"material_{len(self.global_materials)}"
        diffuse = tuple(self.read_float() for _ in range(4))
        self.test_for_separator()
        power = self.read_float()
        # specular and emissive colours have no PBR counterpart
        self.read_vector3()
        self.read_vector3()
        while True:
            token = self.next_token()
            if not token:
                raise ValueError("Unexpected end of file inside Material.")
            if token == b"}":
                break
            self.skip_data_object()
        roughness = float(np.clip(1.0 - power / 128.0, 0.0, 1.0))
        return Material(name=name, base_color=diffuse, metallic=0.0, roughness=roughness)

    def skip_data_object(self):
        """Skip an unknown data object up to its matching closing brace."""
        while True:
            token = self.next_token()
            if not token:
                raise ValueError("Unexpected end of file while parsing unknown segment.")
            if token == b"{":
                break
        depth = 1
        while depth > 0:
            token = self.next_token()
            if not token:
                raise ValueError("Unexpected end of file while parsing unknown segment.")
            if token == b"{":
                depth += 1
            elif token == b"}":
                depth -= 1

    # -- tokens ------------------------------------------------------------

    def next_token(self) -> bytes:
        if self.is_binary:
            return self._next_token_binary()
        return self._next_token_text()

    def _next_token_binary(self) -> bytes:
        if self.end - self.p < 2:
            return b""
        token = self.read_bin_word()
        if token in (_TOKEN_NAME, _TOKEN_STRING):
            length = self.read_bin_dword()
            if self.end - self.p < length:
                return b""
            value = self.buffer[self.p:self.p + length]
            self.p += length
            if token == _TOKEN_STRING:
                self.p += 2  # terminator token
            return value
        if token == _TOKEN_INTEGER:
            self.p += 4
            return b"<integer>"
        if token == _TOKEN_GUID:
            self.p += 16
            return b"<guid>"
        if token == _TOKEN_INTEGER_LIST:
            self.p += self.read_bin_dword() * 4
            return b"<int_list>"
        if token == _TOKEN_FLOAT_LIST:
            self.p += self.read_bin_dword() * (self.float_size // 8)
            return b"<flt_list>"
        return _BINARY_SYMBOLS.get(token, b"<unknown>")

    def _skip_whitespace_and_comments(self):
        while self.p < self.end:
            c = self.buffer[self.p:self.p + 1]
            if c in (b" ", b"\r", b"\t"):
                self.p += 1
            elif c == b"\n":
                self.line_number += 1
                self.p += 1
            elif c == b"#" or self.buffer[self.p:self.p + 2] == b"//":
                while self.p < self.end and self.buffer[self.p:self.p + 1] != b"\n":
                    self.p += 1
            else:
                break

    def _next_token_text(self) -> bytes:
        while True:
            self._skip_whitespace_and_comments()
            if self.p >= self.end:
                return b""
            c = self.buffer[self.p:self.p + 1]
            if c in (b";", b","):
                self.p += 1
                continue
            break
        if c in (b"{", b"}"):
            self.p += 1
            return c
        if c == b'"':
            close = self.buffer.find(b'"', self.p + 1)
            if close < 0:
                raise ValueError(f"Unterminated string on line {self.line_number}.")
            value = self.buffer[self.p + 1:close]
            self.p = close + 1
            return value
        start = self.p
        while self.p < self.end and self.buffer[self.p] not in _TEXT_DELIMITERS:
            self.p += 1
        return self.buffer[start:self.p]

    def read_head_of_data_object(self) -> str:
        """Consume an optional object name and the opening brace."""
        token = self.next_token()
        if token == b"{":
            return ""
        if self.next_token() != b"{":
            raise ValueError(f"Opening brace expected on line {self.line_number}.")
        return token.decode("utf-8", errors="replace")

    def check_for_closing_brace(self):
        if self.next_token() != b"}":
            raise ValueError(f"Closing brace expected on line {self.line_number}.")

    def test_for_separator(self):
        if self.is_binary:
            return
        self._skip_whitespace_and_comments()
        if self.p < self.end and self.buffer[self.p:self.p + 1] in (b";", b","):
            self.p += 1

    # -- values ------------------------------------------------------------

    def read_bin_word(self) -> int:
        if self.end - self.p < 2:
            raise ValueError("Unexpected end of file")
        value = struct.unpack_from("<H", self.buffer, self.p)[0]
        self.p += 2
        return value

    def read_bin_dword(self) -> int:
        if self.end - self.p < 4:
            raise ValueError("Unexpected end of file")
        value = struct.unpack_from("<I", self.buffer, self.p)[0]
        self.p += 4
        return value

    def _begin_binary_number(self, list_token: int):
        if self.binary_num_count == 0:
            token = self.read_bin_word()
            if token == list_token:
                self.binary_num_count = self.read_bin_dword()
            else:
                self.binary_num_count = 1
        self.binary_num_count -= 1

    def read_int(self) -> int:
        if self.is_binary:
            self._begin_binary_number(_TOKEN_INTEGER_LIST)
            return self.read_bin_dword()

        self._skip_whitespace_and_comments()
        start = self.p
        if self.buffer[self.p:self.p + 1] == b"-":
            self.p += 1
        while self.p < self.end and self.buffer[self.p:self.p + 1].isdigit():
            self.p += 1
        if self.p == start or self.buffer[start:self.p] == b"-":
            raise ValueError(f"Number expected on line {self.line_number}.")
        value = int(self.buffer[start:self.p])
        self.test_for_separator()
        return value

    def read_float(self) -> float:
        if self.is_binary:
            self._begin_binary_number(_TOKEN_FLOAT_LIST)
            if self.float_size == 64:
                value = struct.unpack_from("<d", self.buffer, self.p)[0]
                self.p += 8
            else:
                value = struct.unpack_from("<f", self.buffer, self.p)[0]
                self.p += 4
            return value

        self._skip_whitespace_and_comments()
        # Some exporters write NaN placeholders
        for special in (b"-1.#IND00", b"1.#IND00", b"1.#QNAN0"):
            if self.buffer.startswith(special, self.p):
                self.p += len(special)
                self.test_for_separator()
                return 0.0
        start = self.p
        while self.p < self.end and self.buffer[self.p] in b"0123456789+-.eE":
            self.p += 1
        if self.p == start:
            raise ValueError(f"Number expected on line {self.line_number}.")
        value = float(self.buffer[start:self.p])
        self.test_for_separator()
        return value

    def read_vector3(self) -> Tuple[float, float, float]:
        x = self.read_float()
        y = self.read_float()
        z = self.read_float()
        self.test_for_separator()
        return (x, y, z)


def _mesh_nodes(mesh: XMesh, fallback_name: str) -> List[RawNode]:
    """Split an XMesh into one raw node per material in use."""
    name = mesh.name or fallback_name
    normals = None
    # Normals pass through only when they index exactly like positions
    if len(mesh.normals) == len(mesh.positions) and mesh.normal_faces == mesh.faces:
        normals = mesh.normals

    if not mesh.materials or len(mesh.face_materials) == 0:
        material = mesh.materials[0] if mesh.materials else None
        return [RawNode(name=name, geometry=PolygonSoup(mesh.positions, mesh.faces, normals, name),
                        material=material)]

    face_materials = list(mesh.face_materials)
    # A short list repeats its last entry for the remaining faces
    if len(face_materials) < len(mesh.faces):
        face_materials += [face_materials[-1]] * (len(mesh.faces) - len(face_materials))

    nodes = []
    for slot in sorted(set(face_materials[:len(mesh.faces)])):
        faces = [f for f, m in zip(mesh.faces, face_materials) if m == slot]
        material = mesh.materials[slot] if 0 <= slot < len(mesh.materials) else None
        part = f"{name}_{slot}" if len(mesh.materials) > 1 else name
        nodes.append(RawNode(name=part, geometry=PolygonSoup(mesh.positions, faces, normals, part),
                             material=material))
    return nodes


def _frame_node(frame: XFrame) -> RawNode:
    node = RawNode(name=frame.name, matrix=frame.matrix)
    for i, mesh in enumerate(frame.meshes):
        parts = _mesh_nodes(mesh, f"{frame.name}_mesh_{i}")
        if len(frame.meshes) == 1 and len(parts) == 1:
            node.geometry = parts[0].geometry
            node.material = parts[0].material
        else:
            node.children.extend(parts)
    node.children.extend(_frame_node(child) for child in frame.children)
    return node


def parse_xfile(data: bytes) -> List[RawNode]:
    """Parse a DirectX .x payload into raw scene nodes."""
    if data[8:12] in (b"tzip", b"bzip"):
        raise InvalidContainerError("x", "MSZip compressed .x files are not supported")
    try:
        parser = XFileParser(data)
    except (ValueError, struct.error, IndexError) as e:
        raise InvalidContainerError("x", str(e)) from e

    roots = [_frame_node(frame) for frame in parser.frames]
    for i, mesh in enumerate(parser.global_meshes):
        roots.extend(_mesh_nodes(mesh, f"mesh_{i}"))
    logger.info(f"Parsed .x file v{parser.major_version}.{parser.minor_version}: "
                f"{len(parser.frames)} frames, {len(parser.global_meshes)} top-level meshes")
    return roots
