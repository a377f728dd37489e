from extmgr.cli.main import app


def main():
    """Entry point for the ``extmgr`` console script."""
    app()


if __name__ == "__main__":
    main()
