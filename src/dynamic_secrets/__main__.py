"""Command-line entry point: `python -m dynamic_secrets` or `dynamic-secrets`."""


def main() -> None:
    # The tools register themselves on the shared FastMCP instance at import
    from . import tools  # noqa: F401
    from .server import main as run_server

    run_server()


if __name__ == "__main__":
    main()
