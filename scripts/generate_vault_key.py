#!/usr/bin/env python3
"""Generate a key-vault key for sealing deposit private keys.

Outputs a urlsafe-base64 encoded 256-bit AES key. Set it as the vault_key
of RailgateConfig (e.g. from RAILGATE_VAULT_KEY in your .env).

Losing this key makes every unswept deposit unrecoverable. Rotating it
requires sweeping or re-sealing all open ledger-token orders first.

Requires: pip install cryptography
"""

from __future__ import annotations

import base64
import sys

try:
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM
except ImportError:
    print("Error: cryptography not installed. Run: pip install cryptography", file=sys.stderr)
    sys.exit(1)


def main() -> None:
    key = AESGCM.generate_key(bit_length=256)
    encoded = base64.urlsafe_b64encode(key).decode("ascii")

    print("=== Railgate Vault Key (AES-256-GCM) ===")
    print()
    print("vault key (SECRET: back up securely, never commit to git):")
    print(f"  {encoded}")
    print()
    print("--- Environment variable usage ---")
    print()
    print(f"  RAILGATE_VAULT_KEY={encoded}")


if __name__ == "__main__":
    main()
