"""nanoca command line: one load-mutate-persist cycle per invocation."""

import sys
import json
import getpass
import logging
import argparse

from dotenv import find_dotenv, load_dotenv
from pydantic import ValidationError as ModelValidationError

from nanoca.common.config import get_settings
from nanoca.common.errors import IOFailure, NanoCAError, ValidationError
from nanoca.common.models import KeyParams, SubjectAttributes
from nanoca.crypto.csr import create_request, validate_file
from nanoca.crypto.keys import KeyRef, is_encrypted
from nanoca.ca import identity as ca_identity
from nanoca.ca.crl import regenerate
from nanoca.ca.listing import list_entries
from nanoca.ca.revocation import revoke
from nanoca.ca.signing import resign, sign

PASSWORD_REMINDER = "Keep the passphrase safe: the key cannot be used without it and it cannot be recovered."


# -------------------- INPUT HELPERS -------------------- #

def _subject(args) -> SubjectAttributes:
    try:
        return SubjectAttributes(
            common_name=args.cn,
            country=args.country,
            state=args.state,
            locality=args.locality,
            organization=args.org,
            organizational_unit=args.ou,
            email=args.email,
        )
    except ModelValidationError as e:
        raise ValidationError(f"invalid subject: {e.errors()[0]['msg']}")


def _new_password(args, settings):
    """Passphrase for a key about to be created, or None for an unencrypted key."""
    if not args.encrypt:
        return None
    if settings.password:
        return settings.password.encode()
    first = getpass.getpass("New key passphrase: ")
    if not first:
        raise ValidationError("empty passphrase")
    if getpass.getpass("Repeat passphrase: ") != first:
        raise ValidationError("passphrases do not match")
    return first.encode()


def _ca_key(identity, settings):
    password = None
    if identity.key_is_encrypted():
        password = (settings.password or getpass.getpass("CA key passphrase: ")).encode()
    return identity.load_signing_key(password)


def _key_params(key_size) -> KeyParams:
    try:
        return KeyParams(key_size=key_size)
    except ModelValidationError as e:
        raise ValidationError(f"invalid key size: {e.errors()[0]['msg']}")


def _ca_dir(args, settings):
    return args.dir or settings.ca_dir


def _given(value, default):
    """Command-line value if one was passed (0 included), else the configured default."""
    return default if value is None else value


# -------------------- COMMANDS -------------------- #

def cmd_create_ca(args, settings):
    subject = _subject(args)
    password = _new_password(args, settings)
    identity = ca_identity.create(
        _ca_dir(args, settings),
        subject,
        _key_params(_given(args.key_size, settings.key_size)),
        password=password,
        days=_given(args.days, settings.ca_days),
    )
    print(f"✓ Created CA '{subject.common_name}' in {identity.layout.root}")
    print(f"  certificate: {identity.layout.cert_path}")
    print(f"  key:         {identity.layout.key_path}")
    if password:
        print(PASSWORD_REMINDER)


def cmd_create_request(args, settings):
    subject = _subject(args)
    key_ref = KeyRef.parse(args.key)
    if key_ref.exists():
        password = None
        if is_encrypted(key_ref.location):
            password = (settings.password or getpass.getpass("Key passphrase: ")).encode()
    else:
        password = _new_password(args, settings)
    _, created_key = create_request(
        key_ref,
        args.output,
        subject,
        sans=args.san or (),
        key_params=_key_params(args.key_size),
        password=password,
    )
    print(f"✓ Wrote request {args.output}")
    if created_key:
        print(f"✓ Generated key {key_ref}")
        if password:
            print(PASSWORD_REMINDER)


def cmd_sign(args, settings):
    identity = ca_identity.locate(_ca_dir(args, settings))
    request = validate_file(args.request)
    key = _ca_key(identity, settings)
    _, serial = sign(
        identity, request, _given(args.days, settings.cert_days), key,
        output_path=args.output, lock_timeout=settings.lock_timeout,
    )
    print(f"✓ Signed certificate serial {serial}: {identity.layout.issued_cert_path(serial)}")
    if args.output:
        print(f"  copied to {args.output}")


def cmd_resign(args, settings):
    identity = ca_identity.locate(_ca_dir(args, settings))
    key = _ca_key(identity, settings)
    resign(identity, args.serial, key, output_path=args.output, lock_timeout=settings.lock_timeout)
    print(f"✓ Re-signed certificate serial {args.serial}")


def cmd_revoke(args, settings):
    identity = ca_identity.locate(_ca_dir(args, settings))
    key = _ca_key(identity, settings)
    entry, _ = revoke(identity, args.serial, args.reason, key, lock_timeout=settings.lock_timeout)
    print(f"✓ Revoked serial {entry.serial} ({entry.reason})")
    print("  Run 'nanoca gen-crl' to publish an updated CRL.")


def cmd_gen_crl(args, settings):
    identity = ca_identity.locate(_ca_dir(args, settings))
    key = _ca_key(identity, settings)
    crl = regenerate(identity, _given(args.days, settings.crl_days), key, lock_timeout=settings.lock_timeout)
    print(f"✓ Published CRL with {len(crl)} revoked certificate(s): {identity.layout.crl_path}")


def cmd_list(args, settings):
    identity = ca_identity.locate(_ca_dir(args, settings))
    for view in list_entries(identity):
        print(view.line())


def cmd_info(args, settings):
    identity = ca_identity.locate(_ca_dir(args, settings))
    print(json.dumps(identity.describe(), indent=2))


# -------------------- PARSER -------------------- #

def _add_subject_args(p):
    p.add_argument("--cn", required=True, help="Common Name")
    p.add_argument("--country", help="two-letter country code")
    p.add_argument("--state")
    p.add_argument("--locality")
    p.add_argument("--org")
    p.add_argument("--ou")
    p.add_argument("--email")
    p.add_argument("--encrypt", action="store_true",
                   help="protect a new key with a passphrase (NANOCA_PASSWORD or prompt)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nanoca", description="File-based X.509 certificate authority.")
    parser.add_argument("-d", "--dir", help="CA directory (default: $NANOCA_DIR or .)")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-ca", help="create a CA in an empty directory")
    _add_subject_args(p)
    p.add_argument("--key-size", type=int)
    p.add_argument("--days", type=int, help="root certificate validity")
    p.set_defaults(func=cmd_create_ca)

    p = sub.add_parser("create-request", help="create a signing request (and its key if missing)")
    p.add_argument("key", help="key path (created if missing) or pkcs11: URI")
    p.add_argument("output", help="request output path")
    _add_subject_args(p)
    p.add_argument("--san", action="append", help="subject alternative name; repeatable")
    p.add_argument("--key-size", type=int, default=2048)
    p.set_defaults(func=cmd_create_request)

    p = sub.add_parser("sign", help="sign a request")
    p.add_argument("request")
    p.add_argument("-o", "--output", help="also write the certificate here")
    p.add_argument("--days", type=int)
    p.set_defaults(func=cmd_sign)

    p = sub.add_parser("resign", help="re-issue a certificate from its archived request")
    p.add_argument("serial", type=int)
    p.add_argument("-o", "--output")
    p.set_defaults(func=cmd_resign)

    p = sub.add_parser("revoke", help="revoke a certificate by serial")
    p.add_argument("serial", type=int)
    p.add_argument("--reason", default="unspecified")
    p.set_defaults(func=cmd_revoke)

    p = sub.add_parser("gen-crl", help="publish a new CRL")
    p.add_argument("--days", type=int, help="next-update window")
    p.set_defaults(func=cmd_gen_crl)

    p = sub.add_parser("list", help="list issued certificates")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("info", help="show CA details")
    p.set_defaults(func=cmd_info)
    return parser


def main(argv=None) -> int:
    load_dotenv(find_dotenv(usecwd=True))
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s - %(message)s",
    )
    try:
        settings = get_settings()
        args.func(args, settings)
    except NanoCAError as e:
        print(f"❌ {e}", file=sys.stderr)
        return e.exit_code
    except OSError as e:
        print(f"❌ {e}", file=sys.stderr)
        return IOFailure.exit_code
    except KeyboardInterrupt:
        print("❌ interrupted", file=sys.stderr)
        return 130
    return 0


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
