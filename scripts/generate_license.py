from __future__ import annotations

import argparse
from pathlib import Path
import sys

from unistatus.core.errors import LicenseError
from unistatus.services.licensing import build_license_payload, generate_license_keypair, sign_license_payload


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Issue uni-status license keys")
    sub = parser.add_subparsers(dest="command", required=True)

    keypair = sub.add_parser("keypair", help="Generate an RSA signing keypair")
    keypair.add_argument("--out-dir", default=".", help="Directory for license_private.pem / license_public.pem")

    sign = sub.add_parser("sign", help="Sign a license key")
    sign.add_argument("--private-key", required=True, help="Path to the PEM private key")
    sign.add_argument("--plan", required=True, choices=["pro", "enterprise"])
    sign.add_argument("--org", default=None, help="Bind the license to one organization id")
    sign.add_argument("--email", required=True)
    sign.add_argument("--name", required=True)
    sign.add_argument("--days", type=int, default=365, help="Validity in days; 0 issues a perpetual key")
    return parser


def _keypair(args: argparse.Namespace) -> int:
    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    private_pem, public_pem = generate_license_keypair()
    (out_dir / "license_private.pem").write_text(private_pem, encoding="utf-8")
    (out_dir / "license_public.pem").write_text(public_pem, encoding="utf-8")
    print(f"wrote {out_dir / 'license_private.pem'} and {out_dir / 'license_public.pem'}")
    return 0


def _sign(args: argparse.Namespace) -> int:
    private_pem = Path(args.private_key).read_text(encoding="utf-8")
    payload = build_license_payload(
        plan=args.plan,
        email=args.email,
        name=args.name,
        organization_id=args.org,
        valid_days=args.days if args.days > 0 else None,
    )
    print(sign_license_payload(payload, private_pem))
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        if args.command == "keypair":
            return _keypair(args)
        return _sign(args)
    except (OSError, LicenseError, ValueError) as exc:
        print(f"generate_license failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
