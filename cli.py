#!/usr/bin/env python3
"""
Command-line interface for the notification dispatch layer.

Usage:
    python cli.py [command] [options]

Commands:
    providers   Show which providers are configured
    test-email  Send a test email to the configured sender address
    reset       Send a password reset link
    test        Run the test suite
    serve       Start the API server

Examples:
    python cli.py providers
    python cli.py test-email --provider resend
    python cli.py reset alice@example.com
    python cli.py serve --reload
"""

import argparse
import logging
import subprocess
import sys


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
        datefmt="%H:%M:%S",
    )


def show_providers() -> None:
    """Print the availability of every provider."""
    from shared.channels import ProviderRegistry, configuration_hints
    from shared.models import ChannelFamily
    from shared.settings import get_settings

    settings = get_settings()
    registry = ProviderRegistry.from_settings(settings)
    try:
        for provider_id, reason in registry.availability().items():
            mark = "✓" if reason is None else "✗"
            line = f"  {mark} {provider_id.value:<12} ({provider_id.family.value})"
            print(line if reason is None else f"{line}  {reason}")
            if reason is not None:
                hint = configuration_hints(provider_id)
                print(f"      {hint.title}: needs {', '.join(hint.required_settings)}")
                print(f"      default URL {hint.default_url}, docs {hint.documentation}")
        print()
        for family in ChannelFamily:
            order = ", ".join(p.value for p in registry.default_order(family)) or "-"
            print(f"  {family.value} order: {order}")
    finally:
        registry.close()


def run_test_email(provider: str) -> None:
    """Send a connection test email through one email provider."""
    from shared.channels import ProviderRegistry
    from shared.errors import ProviderUnavailable
    from shared.models import ProviderId
    from shared.settings import get_settings

    registry = ProviderRegistry.from_settings(get_settings())
    try:
        adapter = registry.resolve(ProviderId(provider))
        outcome = adapter.test_connection()
    except ProviderUnavailable as e:
        print(f"✗ {e}")
        sys.exit(1)
    finally:
        registry.close()

    print(outcome)
    if outcome.success and not outcome.confirmed:
        print("  Request sent; this provider does not report delivery, check the inbox.")
    if not outcome.success:
        sys.exit(1)


def run_reset(email: str) -> None:
    """Issue a reset token and email the link."""
    from notifications.dispatcher import Dispatcher
    from notifications.password_reset import PasswordResetService
    from notifications.tokens import TokenPolicy, TokenService
    from shared.channels import ProviderRegistry
    from shared.credential_store import get_credential_store
    from shared.settings import get_settings
    from shared.templates import MessageFormatter

    settings = get_settings()
    if not settings.RESET_TOKEN_STORE_PATH:
        print("Note: RESET_TOKEN_STORE_PATH is not set, the token only lives in this process.")

    registry = ProviderRegistry.from_settings(settings)
    try:
        service = PasswordResetService(
            TokenService(
                get_credential_store(settings.RESET_TOKEN_STORE_PATH),
                TokenPolicy.from_settings(settings),
            ),
            Dispatcher(
                registry,
                MessageFormatter(settings.APP_NAME, settings.CURRENCY_SYMBOL),
                country_code=settings.PHONE_COUNTRY_CODE,
            ),
            settings.RESET_PASSWORD_URL,
        )
        outcome = service.request_reset(email)
    finally:
        registry.close()

    mark = "✓" if outcome.accepted else "✗"
    print(f"{mark} {outcome.message}")
    if outcome.result:
        for attempt in outcome.result.attempts:
            status = "ok" if attempt.success else attempt.detail
            print(f"    {attempt.provider.value}: {status}")
    if not outcome.accepted:
        sys.exit(1)


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = [sys.executable, "-m", "pytest"] + args
    subprocess.run(cmd)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    cmd = [sys.executable, "-m", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    subprocess.run(cmd)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="VibePOS notification dispatch CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s providers
  %(prog)s test-email --provider mailketing
  %(prog)s reset alice@example.com
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("providers", help="Show which providers are configured")

    test_email_parser = subparsers.add_parser("test-email", help="Send a test email to the sender address")
    test_email_parser.add_argument(
        "--provider",
        choices=["mailketing", "resend"],
        default="mailketing",
        help="Which email provider to test",
    )

    reset_parser = subparsers.add_parser("reset", help="Send a password reset link")
    reset_parser.add_argument("email", help="Account email address")

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()
    _configure_logging(args.verbose)

    if args.command == "providers":
        show_providers()
    elif args.command == "test-email":
        run_test_email(args.provider)
    elif args.command == "reset":
        run_reset(args.email)
    elif args.command == "test":
        run_tests(args.pytest_args)
    elif args.command == "serve":
        run_server(args.host, args.port, args.reload)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
