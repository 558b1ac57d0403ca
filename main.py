from src.copilot.app.copilot_app import main


if __name__ == "__main__":
    """
    Main entry point for the copilot command line client.
    """
    raise SystemExit(main())
