"""Command line entry point for migrating and reconciling ERP data."""
from services.commands import main


if __name__ == "__main__":
    raise SystemExit(main())
