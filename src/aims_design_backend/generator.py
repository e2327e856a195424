"""
Interface to the document generation engine.

The engine is an external collaborator: it receives the generation request
and a progress callback, and returns the finished file as bytes or raises.
Which engine runs is a deployment choice expressed as an import path
(``package.module:ClassName``) in ``generator.target``.
"""

from __future__ import annotations

import importlib
from typing import Any, Protocol

from .models import GenerationRequest
from .progress import ProgressCallback


class DocumentGenerator(Protocol):
    def generate(self, request: GenerationRequest, on_progress: ProgressCallback) -> bytes: ...


def load_generator(target: str, **options: Any) -> DocumentGenerator:
    """
    Instantiate a generator from a ``module:attribute`` import path.

    Keyword options are passed to the factory unchanged.

    Raises:
        ValueError: If the path is not of the form ``module:attribute``
        ModuleNotFoundError / AttributeError: If the target cannot be imported
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Generator target must look like 'module:ClassName', got {target!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory(**options)
