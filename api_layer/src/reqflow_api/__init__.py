"""reqflow_api."""

from .monitoring.logger import configure_logger

# Configure logger with default settings (console logging)
# create_app reconfigures it with the level and format from Settings
configure_logger()
