"""Module entrypoint for `python -m agentvm`."""

from agentvm.cli import run

if __name__ == "__main__":
    raise SystemExit(run())
