"""CLI entry point for dpop-token-server."""
import argparse
import json
import sys

from config import load_settings
from main import VERSION, run
from oauth.endpoints import authorization_server_metadata
from oauth.keys import load_keys


def cmd_serve():
    run(load_settings())


def cmd_jwks():
    """Print the public JWKS (creates the signing key if none exists)."""
    keys = load_keys(load_settings())
    print(json.dumps(keys.jwks, indent=2))


def cmd_metadata():
    print(json.dumps(authorization_server_metadata(load_settings()), indent=2))


def cmd_version():
    print(f"dpop-token-server {VERSION}")


def main(argv=None):
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        prog="dpop-token-server",
        description="OAuth 2.0 token server with DPoP-bound refresh tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  serve     Start the token server (default)
  jwks      Print the public JWKS
  metadata  Print the authorization server metadata
  version   Show version

Environment:
  HOST, PORT, SUPPRESS_DPOP_CHECK, APP_ENV, PRIVATE_KEY, PRIVATE_KEY_FILE,
  SUPABASE_URL, SUPABASE_ANON_KEY, STATE_TABLE, LOG_TABLE, LOG_LEVEL
"""
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "jwks", "metadata", "version"],
        help="Command to run (default: serve)"
    )
    args = parser.parse_args(argv)

    if args.command == "serve":
        cmd_serve()
    elif args.command == "jwks":
        cmd_jwks()
    elif args.command == "metadata":
        cmd_metadata()
    elif args.command == "version":
        cmd_version()
    else:
        parser.print_help()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
