from .app import create_app
from .config import ServerConfig, load_config

__version__ = "0.1.0"

__all__ = ["create_app", "ServerConfig", "load_config", "__version__"]
