__version__ = "0.1.0"

import logging

log = logging.getLogger(__name__)

