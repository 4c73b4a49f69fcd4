"""Loading the deployment's signer.

Key management lives outside this package.  A deployment points
``FUND_SIGNER_FACTORY`` at a zero-argument callable (``"pkg.module:make"``)
returning one object that notarizes transactions and signs oracle requests,
i.e. it satisfies both :class:`~fund_engine.ledger.base.TransactionSigner`
and :class:`~fund_engine.oracle.client.RequestSigner`.
"""

from __future__ import annotations

import importlib
import logging
from typing import Any

logger = logging.getLogger(__name__)


class SignerConfigError(Exception):
    """Raised when the configured signer factory cannot be loaded."""


def _lazy_import(module: str, attr: str) -> Any:
    try:
        mod = importlib.import_module(module)
    except ImportError as exc:
        raise SignerConfigError(f"Cannot import signer module '{module}': {exc}") from exc
    try:
        return getattr(mod, attr)
    except AttributeError as exc:
        raise SignerConfigError(f"Attribute '{attr}' not found in module '{module}'") from exc


def load_signer(factory_path: str) -> Any:
    """Import and call the signer factory named by *factory_path*."""
    module, sep, attr = factory_path.partition(":")
    if not sep or not module or not attr:
        raise SignerConfigError(f"Signer factory must look like 'package.module:callable', got {factory_path!r}")
    factory = _lazy_import(module, attr)
    if not callable(factory):
        raise SignerConfigError(f"Signer factory {factory_path} is not callable")
    signer = factory()
    for required in ("account_address", "notarize", "public_key", "sign"):
        if not hasattr(signer, required):
            raise SignerConfigError(f"Signer from {factory_path} has no '{required}'")
    logger.info("Loaded signer from %s for account %s", factory_path, signer.account_address)
    return signer
