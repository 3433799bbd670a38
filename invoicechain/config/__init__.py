from invoicechain.config.chain_config import ChainConfig
from invoicechain.config.logging_config import configure_logging

__all__ = ['ChainConfig', 'configure_logging']
