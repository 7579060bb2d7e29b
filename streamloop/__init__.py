"""streamloop - streaming tool-calling agent loop."""

__version__ = "0.1.0"

from streamloop.config import Config
from streamloop.main import main

__all__ = ["Config", "main", "__version__"]
