"""Run the kots-local command line tool with `python -m kots_local`."""

from kots_local.tool.kots_local import main

if __name__ == "__main__":
    main()
