"""stepline.py — Entry point. All logic lives in the steprunner/ package.

Run with:
    python stepline.py --container ID [--pipeline build]
or, after pip install -e .:
    stepline --container ID [--pipeline build]

Subcommands:
    check [PATH]    Validate a stepline.yml and exit.

Everything else is passed to the pipeline runner; see ``stepline --help``.
"""

import sys


def _cli() -> None:
    """Dispatch ``check`` to the validator; everything else runs a pipeline."""
    args = sys.argv[1:]

    if args and args[0] == "check":
        from helpers.check_config import main as check_main

        check_main(args[1:])
        return

    from steprunner import main

    main(args)


if __name__ == "__main__":
    _cli()
