"""Factory for e-invoice format generators.

Generators are stateless once built, so each format is constructed once per
factory and the instance is shared. The factory is an explicit object rather
than module-level state; get_generator_factory() provides the process-wide
default.

Based on:
- Factory Pattern: https://refactoring.guru/design-patterns/factory-method/python
- Registry Pattern: Python Cookbook 3rd Edition, Recipe 9.22
"""

import logging
import threading
from collections.abc import Callable

from einvoice.formats.base import FormatGenerator
from einvoice.formats.cii import XRechnungCIIGenerator
from einvoice.formats.facturx import create_facturx_basic, create_facturx_en16931
from einvoice.formats.fatturapa import FatturaPAGenerator
from einvoice.formats.ksef import KSeFGenerator
from einvoice.formats.ubl import (
    CIUSROGenerator,
    create_nlcius,
    create_peppol_bis,
    create_xrechnung_ubl,
)
from einvoice.shared.errors import UnknownFormatError

logger = logging.getLogger(__name__)

GeneratorConstructor = Callable[[], FormatGenerator]

DEFAULT_GENERATORS: dict[str, GeneratorConstructor] = {
    "xrechnung-cii": XRechnungCIIGenerator,
    "xrechnung-ubl": create_xrechnung_ubl,
    "peppol-bis": create_peppol_bis,
    "facturx-en16931": create_facturx_en16931,
    "facturx-basic": create_facturx_basic,
    "fatturapa": FatturaPAGenerator,
    "ksef": KSeFGenerator,
    "nlcius": create_nlcius,
    "cius-ro": CIUSROGenerator,
}


class GeneratorFactory:
    """Registry of format constructors with a per-format instance cache.

    Thread-safe: construction and cache access happen under one lock, so
    concurrent create() calls for the same format yield a single instance.
    """

    def __init__(self, constructors: dict[str, GeneratorConstructor] | None = None) -> None:
        self._lock = threading.Lock()
        self._constructors: dict[str, GeneratorConstructor] = dict(
            DEFAULT_GENERATORS if constructors is None else constructors
        )
        self._instances: dict[str, FormatGenerator] = {}

    def register(self, format_id: str, constructor: GeneratorConstructor) -> None:
        """Register (or replace) a format constructor.

        Args:
            format_id: Registry key
            constructor: Zero-argument callable returning a FormatGenerator
        """
        with self._lock:
            self._constructors[format_id] = constructor
            self._instances.pop(format_id, None)
        logger.info(f"Registered format generator: {format_id}")

    def create(self, format_id: str) -> FormatGenerator:
        """Return the generator for a format, building it on first use.

        Raises:
            UnknownFormatError: If the format is not registered
        """
        with self._lock:
            cached = self._instances.get(format_id)
            if cached is not None:
                return cached
            constructor = self._constructors.get(format_id)
            if constructor is None:
                raise UnknownFormatError(format_id, list(self._constructors))
            generator = constructor()
            self._instances[format_id] = generator
        logger.info(f"Format generator created: {format_id} (v{generator.version})")
        return generator

    def get_available_formats(self) -> list[str]:
        with self._lock:
            return list(self._constructors)

    def clear(self) -> None:
        """Drop cached instances; the next create() builds fresh ones."""
        with self._lock:
            self._instances.clear()

    def get_engine_versions(self) -> dict[str, dict[str, str]]:
        """Generator and standard versions per registered format."""
        versions = {}
        for format_id in self.get_available_formats():
            generator = self.create(format_id)
            versions[format_id] = {
                "name": generator.format_name,
                "version": generator.version,
                "spec_version": generator.spec_version,
                "spec_date": generator.spec_date,
            }
        return versions


_factory: GeneratorFactory | None = None
_factory_lock = threading.Lock()


def get_generator_factory() -> GeneratorFactory:
    """Process-wide factory with all built-in formats registered."""
    global _factory
    with _factory_lock:
        if _factory is None:
            _factory = GeneratorFactory()
        return _factory
