"""Ledger access: gateway client, signer boundary, and manifest builder."""

from fund_engine.ledger.base import GatewayError, LedgerGatewayInterface, SignedTransaction, TransactionSigner
from fund_engine.ledger.gateway import GatewayClient
from fund_engine.ledger.manifest import Manifest, ManifestBuilder

__all__ = [
    "GatewayClient",
    "GatewayError",
    "LedgerGatewayInterface",
    "Manifest",
    "ManifestBuilder",
    "SignedTransaction",
    "TransactionSigner",
]
