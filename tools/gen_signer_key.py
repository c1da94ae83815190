"""Generate a local Ed25519 signer key and a trust file with its public key."""

import argparse
import json
import os

from lotseal.signing import generate_key_file


def main(argv=None):
    ap = argparse.ArgumentParser(description="Generate a lotseal transaction signer key")
    ap.add_argument("--kid", default="lotseal-signer-01")
    ap.add_argument("--key-out", default="secrets/lotseal_signer_key.json")
    ap.add_argument("--trust-out", default="trust/signer_keys.json")
    args = ap.parse_args(argv)

    key_file, public_b64 = generate_key_file(args.kid)

    os.makedirs(os.path.dirname(args.key_out) or ".", exist_ok=True)
    os.makedirs(os.path.dirname(args.trust_out) or ".", exist_ok=True)

    with open(args.key_out, "w", encoding="utf-8") as f:
        json.dump(key_file, f, indent=2)

    trust = {"signer_keys": {args.kid: public_b64}}
    with open(args.trust_out, "w", encoding="utf-8") as f:
        json.dump(trust, f, indent=2)

    print(f"Generated signer key {args.kid} and trust file.")


if __name__ == "__main__":
    main()
