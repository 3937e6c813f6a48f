"""Package entry point for ``python -m audiomidi_client``.

WHY: Users run the client as ``python -m audiomidi_client convert song.wav``.
Python's ``-m`` flag looks for ``__main__.py`` inside the package.

HOW: Delegates to the CLI's main() function.
"""

from audiomidi_client.cli import main

if __name__ == "__main__":
    main()
