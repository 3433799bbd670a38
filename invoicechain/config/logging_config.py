"""
Logging setup driven by the ``logging`` configuration section.
"""

import logging
from typing import Optional

from invoicechain.config.chain_config import ChainConfig


def configure_logging(config: Optional[ChainConfig] = None, level: Optional[str] = None) -> None:
    """
    Configure root logging once for CLI and worker processes

    Args:
        config: Configuration to read ``logging.level``, ``logging.format``
            and ``logging.file`` from
        level: Overrides the configured level
    """
    config = config or ChainConfig.instance()
    log_config = config.get_logging_config()

    level_name = (level or log_config.get('level') or 'INFO').upper()
    handlers = [logging.StreamHandler()]

    log_file = log_config.get('file')
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=log_config.get('format') or '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )

    # boto and the HTTP stack are noisy at DEBUG
    for noisy in ('botocore', 'boto3', 'urllib3', 'httpx'):
        logging.getLogger(noisy).setLevel(max(logging.getLogger().level, logging.INFO))
