if __name__ == "__main__":
    try:
        from nodewatch.app import run
    except ModuleNotFoundError as e:
        if "rich" in str(e):
            import sys
            print("Missing dependency. Install with: pip install -e .", file=sys.stderr)
            sys.exit(1)
        raise
    raise SystemExit(run())
