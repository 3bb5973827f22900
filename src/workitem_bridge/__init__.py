"""Work Item Bridge - Migrate Rally work items to Azure DevOps."""

import logging
import warnings

__version__ = "0.1.0"
__author__ = "Work Item Migration Team"
__license__ = "Apache-2.0"

# Suppress verbose third-party library logging
# These libraries generate excessive console output that clutters migration progress
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpcore.connection").setLevel(logging.WARNING)
logging.getLogger("httpcore.http11").setLevel(logging.WARNING)

warnings.filterwarnings("ignore", category=DeprecationWarning, module="httpx")
