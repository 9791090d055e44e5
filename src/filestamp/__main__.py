"""Allow ``python -m filestamp``."""

from filestamp.cli import main

main()
