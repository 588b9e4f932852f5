"""Allow `python -m agent_mesh` to invoke the CLI entry-point."""

from .cli import app


def main() -> None:
    app(prog_name="agent-mesh")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
