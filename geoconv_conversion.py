"""
geoconv Conversion Facade
Public entry points: convert between any readable and writable format pair,
or move files into and out of the canonical GLB container.

Usage:
    from geoconv_conversion import convert
    from geoconv_job import InputFile

    outputs = convert([InputFile("part.step", data)], "step", "obj")
"""

import logging
import threading
from typing import List, Optional, Sequence

from geoconv_backends import Backends, default_backends
from geoconv_config import ConversionSettings
from geoconv_errors import EmptyInputError
from geoconv_export import export_canonical, export_job
from geoconv_formats import (
    is_input_supported,
    is_output_supported,
    list_input_formats,
    list_output_formats,
    require_input,
    require_output,
)
from geoconv_import import import_job
from geoconv_job import ConversionJob, InputFile, OutputFile

logger = logging.getLogger(__name__)


class Converter:
    """Stateless between calls; owns only its backend handles."""

    def __init__(self, backends: Optional[Backends] = None):
        self.backends = backends or default_backends()

    def convert(self, files: Sequence[InputFile], source_format: str, target_format: str,
                settings: Optional[ConversionSettings] = None) -> List[OutputFile]:
        """Convert a file set from source_format to target_format."""
        source = require_input(source_format)
        target = require_output(target_format)
        if not files:
            raise EmptyInputError()
        job = ConversionJob.create(files, source.id, target.id, settings)
        outputs = export_job(job, self.backends)
        logger.info(f"Converted {len(job.input_files)} .{source.id} files into "
                    f"{', '.join(o.name for o in outputs)}")
        return outputs

    def import_to_canonical(self, files: Sequence[InputFile], source_format: str,
                            settings: Optional[ConversionSettings] = None) -> bytes:
        source = require_input(source_format)
        if not files:
            raise EmptyInputError()
        return import_job(ConversionJob.create(files, source.id, settings=settings), self.backends)

    def export_from_canonical(self, data: bytes, target_format: str,
                              settings: Optional[ConversionSettings] = None) -> List[OutputFile]:
        target = require_output(target_format)
        return export_canonical(data, target.id, settings, self.backends)

    def list_supported_input_formats(self) -> List[str]:
        return list_input_formats()

    def list_supported_output_formats(self) -> List[str]:
        return list_output_formats()

    def is_input_format_supported(self, format_id: str) -> bool:
        return is_input_supported(format_id)

    def is_output_format_supported(self, format_id: str) -> bool:
        return is_output_supported(format_id)


_default_converter: Optional[Converter] = None
_default_converter_lock = threading.Lock()


def default_converter() -> Converter:
    """Process-wide converter behind the module-level functions, created on first use."""
    global _default_converter
    with _default_converter_lock:
        if _default_converter is None:
            _default_converter = Converter()
        return _default_converter


def convert(files: Sequence[InputFile], source_format: str, target_format: str,
            settings: Optional[ConversionSettings] = None) -> List[OutputFile]:
    return default_converter().convert(files, source_format, target_format, settings)


def import_to_canonical(files: Sequence[InputFile], source_format: str,
                        settings: Optional[ConversionSettings] = None) -> bytes:
    return default_converter().import_to_canonical(files, source_format, settings)


def export_from_canonical(data: bytes, target_format: str,
                          settings: Optional[ConversionSettings] = None) -> List[OutputFile]:
    return default_converter().export_from_canonical(data, target_format, settings)


def list_supported_input_formats() -> List[str]:
    return default_converter().list_supported_input_formats()


def list_supported_output_formats() -> List[str]:
    return default_converter().list_supported_output_formats()


def is_input_format_supported(format_id: str) -> bool:
    return default_converter().is_input_format_supported(format_id)


def is_output_format_supported(format_id: str) -> bool:
    return default_converter().is_output_format_supported(format_id)
