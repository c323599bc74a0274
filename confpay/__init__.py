"""
ConfPay — confidential payroll client for a public ledger.

Architecture:
    Envelope:  CA FE BA BE (4) + block count (1) + [len (1) + AES-GCM block]... + FHE handle
    Keys:      SHA-256(PIN) and SHA-256(wallet signature over a constant message)
    Ledger:    payroll + employee program accounts at program-derived addresses
    Autopay:   once-a-minute roster scan, two independent idempotency guards
"""

__version__ = "0.1.0"

# Envelope format constants
ENVELOPE_MAGIC = b"\xca\xfe\xba\xbe"
ENVELOPE_MAX_SIZE = 256  # storage ceiling of the employee account ciphertext field
ENVELOPE_MAX_BLOCKS = 255
ENVELOPE_MAX_BLOCK_LEN = 255

# Symmetric path
AES_KEY_SIZE = 32  # AES-256
AES_NONCE_SIZE = 12  # AES-GCM standard nonce
AES_TAG_SIZE = 16
SIGNING_MESSAGE = (
    "Sign this message to derive your ConfPay encryption key. "
    "This allows you to securely view and manage salaries."
)

# External (FHE) path
INPUT_TYPE_U64 = 4  # 1: u8, 2: u16, 3: u32, 4: u64, 5: u128

# Ledger units
LAMPORTS_PER_SOL = 1_000_000_000

# Ledger program
PROGRAM_ID = "EpWKv3uvNXVioG5J7WhyDoPy1G6LJ9vTbTcbiKZo6Jjw"
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
DEFAULT_RPC_URL = "https://api.devnet.solana.com"
PAYROLL_SEED = b"payroll"
EMPLOYEE_SEED = b"employee"

# Program string field limits (Borsh serialization bounds)
MAX_NAME_LEN = 50
MAX_ROLE_LEN = 32
MAX_PIN_LEN = 10
MAX_SCHEDULE_LEN = 20

# Autopay
AUTOPAY_TICK_SECS = 60
AUTOPAY_COOLDOWN_SECS = 15 * 60

# Local state directory (overridable with CONFPAY_HOME)
HOME_DIRNAME = ".confpay"
