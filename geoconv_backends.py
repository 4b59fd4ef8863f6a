"""
geoconv Backend Handles
Native conversion libraries are imported lazily, once per process, and shared read-only.
A handle that fails to initialize reports BackendUnavailableError and is not retried.
"""

import importlib
import logging
import threading
from dataclasses import dataclass, field
from types import ModuleType
from typing import Dict, Optional, Sequence

from geoconv_errors import BackendUnavailableError

logger = logging.getLogger(__name__)

BREP_MODULES = (
    "OCP.STEPControl",
    "OCP.IGESControl",
    "OCP.IFSelect",
    "OCP.BRep",
    "OCP.BRepTools",
    "OCP.BRepMesh",
    "OCP.TopAbs",
    "OCP.TopExp",
    "OCP.TopLoc",
    "OCP.TopoDS",
)
DRACO_MODULES = ("DracoPy",)
RHINO_MODULES = ("rhino3dm",)
COLLADA_MODULES = ("collada",)


class BackendHandle:
    """Lazily imported set of modules backing one format family."""

    def __init__(self, family: str, module_names: Sequence[str]):
        self.family = family
        self.module_names = tuple(module_names)
        self._lock = threading.Lock()
        self._modules: Optional[Dict[str, ModuleType]] = None
        self._error: Optional[BackendUnavailableError] = None

    @property
    def is_loaded(self) -> bool:
        return self._modules is not None

    def load(self) -> Dict[str, ModuleType]:
        with self._lock:
            if self._modules is not None:
                return self._modules
            if self._error is not None:
                raise self._error
            modules = {}
            for name in self.module_names:
                try:
                    modules[name] = importlib.import_module(name)
                except ImportError as e:
                    self._error = BackendUnavailableError(self.family, f"cannot import {name}: {e}")
                    logger.error(str(self._error))
                    raise self._error from e
            logger.info(f"Initialized {self.family} backend ({', '.join(self.module_names)})")
            self._modules = modules
            return modules

    def module(self, name: str) -> ModuleType:
        return self.load()[name]

    def available(self) -> bool:
        try:
            self.load()
        except BackendUnavailableError:
            return False
        return True


@dataclass
class Backends:
    """The native handles one Converter uses. Injected so tests can substitute them."""
    brep: BackendHandle = field(default_factory=lambda: BackendHandle("brep", BREP_MODULES))
    draco: BackendHandle = field(default_factory=lambda: BackendHandle("draco", DRACO_MODULES))
    rhino: BackendHandle = field(default_factory=lambda: BackendHandle("rhino", RHINO_MODULES))
    collada: BackendHandle = field(default_factory=lambda: BackendHandle("collada", COLLADA_MODULES))


_default_backends: Optional[Backends] = None
_default_lock = threading.Lock()


def default_backends() -> Backends:
    """Process-wide handles, created on first use."""
    global _default_backends
    with _default_lock:
        if _default_backends is None:
            _default_backends = Backends()
        return _default_backends
