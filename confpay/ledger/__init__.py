"""
Ledger access: JSON-RPC, keys and addresses, transactions, payroll program
accounts, transfers and payment history.
"""

from confpay.ledger.keys import Keypair, b58decode, b58encode, find_program_address
from confpay.ledger.rpc import LedgerRPCError, SolanaRPC
from confpay.ledger.transfer import LedgerTransferError

__all__ = [
    "Keypair",
    "b58decode",
    "b58encode",
    "find_program_address",
    "LedgerRPCError",
    "SolanaRPC",
    "LedgerTransferError",
]
