"""
geoconv Job Model
File containers and the per-request ConversionJob threaded through every pipeline stage.
"""

import posixpath
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from geoconv_config import ConversionSettings
from geoconv_errors import EmptyInputError, MissingPrimaryFileError
from geoconv_formats import normalize_format


def _freeze(file) -> None:
    # bytearray and memoryview payloads are copied once into immutable bytes
    if not isinstance(file.data, bytes):
        object.__setattr__(file, "data", bytes(file.data))


@dataclass(frozen=True)
class InputFile:
    name: str
    data: bytes

    def __post_init__(self):
        _freeze(self)


@dataclass(frozen=True)
class OutputFile:
    name: str
    data: bytes

    def __post_init__(self):
        _freeze(self)


@dataclass(frozen=True)
class ConversionJob:
    """One conversion request. Carries no state across calls."""
    input_files: Tuple[InputFile, ...]
    source_format: str
    target_format: Optional[str] = None
    settings: ConversionSettings = field(default_factory=ConversionSettings)

    @classmethod
    def create(cls, files: Sequence[InputFile], source_format: str, target_format: Optional[str] = None,
               settings: Optional[ConversionSettings] = None) -> "ConversionJob":
        return cls(
            input_files=tuple(files),
            source_format=normalize_format(source_format),
            target_format=normalize_format(target_format) if target_format else None,
            settings=settings or ConversionSettings(),
        )


def has_extension(name: str, extension: str) -> bool:
    return name.lower().endswith("." + normalize_format(extension))


def find_file_by_extension(files: Sequence[InputFile], extension: str) -> Optional[InputFile]:
    for f in files:
        if has_extension(f.name, extension):
            return f
    return None


def resolve_primary(job: ConversionJob) -> Tuple[InputFile, List[InputFile]]:
    """Split the file set into the primary file (matching the source format) and its companions."""
    if not job.input_files:
        raise EmptyInputError()
    primary = find_file_by_extension(job.input_files, job.source_format)
    if primary is None:
        raise MissingPrimaryFileError(job.source_format)
    companions = [f for f in job.input_files if f is not primary]
    return primary, companions


def resource_map(files: Sequence[InputFile]) -> Dict[str, bytes]:
    """Map companion names to their data, keyed both by full name and basename."""
    resources: Dict[str, bytes] = {}
    for f in files:
        normalized = f.name.replace("\\", "/")
        resources[normalized] = f.data
        resources.setdefault(posixpath.basename(normalized), f.data)
    return resources
