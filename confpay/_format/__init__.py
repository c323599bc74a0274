"""
Salary envelope format — compact binary container for dual-path ciphertexts.

Format: CA FE BA BE | count | (len | AES-GCM block)* | external handle
Ceiling: 256 bytes (employee account ciphertext field)
"""

from confpay._format.spec import MAGIC, MAX_ENVELOPE_SIZE, EncodingError
from confpay._format.envelope import Envelope
from confpay._format.writer import EnvelopeWriter
from confpay._format.reader import EnvelopeReader
