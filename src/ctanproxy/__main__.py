"""Allow ``python -m ctanproxy``."""

from .cli_proxy import main

if __name__ == "__main__":
    main()
