from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from license_authority.db import init_db
from license_authority.errors import LicenseAuthorityError, ValidationError
from license_authority.models import LicenseOut, LicenseRecord
from license_authority.services import Services, build_services
from license_authority.settings import configure_logging, get_settings


def _print_json(data: Any) -> None:
    print(json.dumps(data, separators=(",", ":"), sort_keys=False))


def format_license(record: LicenseRecord) -> dict[str, Any]:
    return LicenseOut.from_record(record).model_dump(by_alias=True)


def _parse_features(values: list[str] | None) -> dict[str, Any]:
    features: dict[str, Any] = {}
    for item in values or []:
        name, _, raw = item.partition("=")
        if not name:
            raise ValidationError(f"Invalid feature: {item}")
        features[name] = raw.strip().lower() not in ("0", "false", "no", "off")
    return features


def _handle_create_license(args: argparse.Namespace, services: Services) -> int:
    record = services.authority.issue(
        license_type=args.type,
        duration=args.duration,
        duration_type=args.duration_type,
        hwid_lock=args.hwid_lock,
        features=_parse_features(args.feature),
        discord_username=args.discord_username,
    )
    _print_json(format_license(record))
    return 0


def _handle_list_licenses(args: argparse.Namespace, services: Services) -> int:
    records = services.authority.list(status=args.status, search=args.search)
    _print_json([format_license(record) for record in records])
    return 0


def _handle_show_license(args: argparse.Namespace, services: Services) -> int:
    _print_json(format_license(services.authority.get_by_key(args.key)))
    return 0


def _handle_revoke_license(args: argparse.Namespace, services: Services) -> int:
    record = services.authority.get_by_key(args.key)
    _print_json(format_license(services.authority.revoke(record.id)))
    return 0


def _handle_renew_license(args: argparse.Namespace, services: Services) -> int:
    record = services.authority.get_by_key(args.key)
    _print_json(format_license(services.authority.renew(record.id, days=args.days)))
    return 0


def _handle_generate_key(_: argparse.Namespace, services: Services) -> int:
    codec = services.registry.policy().key_codec()
    _print_json({"license_key": codec.generate()})
    return 0


def _handle_set_setting(args: argparse.Namespace, services: Services) -> int:
    stored = services.registry.set(args.key, args.value)
    _print_json({"key": args.key, "value": stored})
    return 0


def _handle_sweep(_: argparse.Namespace, services: Services) -> int:
    result = services.sweeper.run_once()
    expired = result.expired if result else 0
    expiring_soon = result.expiring_soon if result else 0
    _print_json({"expired": expired, "expiringSoon": expiring_soon})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m license_authority.admin")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create-license")
    create_parser.add_argument(
        "--type", choices=("standard", "premium", "annual", "custom"), default="standard"
    )
    create_parser.add_argument("--duration", type=int)
    create_parser.add_argument("--duration-type", choices=("days", "months", "years"))
    create_parser.add_argument(
        "--hwid-lock", choices=("required", "optional", "none"), default="required"
    )
    create_parser.add_argument("--discord-username", type=str)
    create_parser.add_argument(
        "--feature", action="append", metavar="NAME[=true|false]", help="repeatable"
    )
    create_parser.set_defaults(handler=_handle_create_license)

    list_parser = subparsers.add_parser("list-licenses")
    list_parser.add_argument("--status", choices=("pending", "active", "expired", "revoked"))
    list_parser.add_argument("--search", type=str)
    list_parser.set_defaults(handler=_handle_list_licenses)

    show_parser = subparsers.add_parser("show-license")
    show_parser.add_argument("--key", type=str, required=True)
    show_parser.set_defaults(handler=_handle_show_license)

    revoke_parser = subparsers.add_parser("revoke-license")
    revoke_parser.add_argument("--key", type=str, required=True)
    revoke_parser.set_defaults(handler=_handle_revoke_license)

    renew_parser = subparsers.add_parser("renew-license")
    renew_parser.add_argument("--key", type=str, required=True)
    renew_parser.add_argument("--days", type=int)
    renew_parser.set_defaults(handler=_handle_renew_license)

    generate_parser = subparsers.add_parser("generate-key")
    generate_parser.set_defaults(handler=_handle_generate_key)

    setting_parser = subparsers.add_parser("set-setting")
    setting_parser.add_argument("--key", type=str, required=True)
    setting_parser.add_argument("--value", type=str, required=True)
    setting_parser.set_defaults(handler=_handle_set_setting)

    sweep_parser = subparsers.add_parser("sweep")
    sweep_parser.set_defaults(handler=_handle_sweep)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging("WARNING", settings.log_format)
    init_db(settings.db_path)
    services = build_services(settings)
    services.bus.start()

    try:
        return int(args.handler(args, services))
    except ValidationError as exc:
        print(exc.message, file=sys.stderr)
        return 2
    except LicenseAuthorityError as exc:
        print(exc.message, file=sys.stderr)
        return 1
    finally:
        services.bus.stop()


if __name__ == "__main__":
    raise SystemExit(main())
