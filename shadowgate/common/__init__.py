# Common utilities
from shadowgate.common.crypto import CryptoUtils as CryptoUtils
from shadowgate.common.logging_utils import setup_logger as setup_logger
from shadowgate.common.mixins import Configurable as Configurable

__all__ = ["Configurable", "CryptoUtils", "setup_logger"]
