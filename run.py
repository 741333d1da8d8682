#!/usr/bin/env python3
import sys
from pathlib import Path

# Add the src directory to the Python path
src_path = Path(__file__).parent / "src"
sys.path.insert(0, str(src_path))

if __name__ == "__main__":
    # `python run.py run --cases ... --base-url ...` executes locally; otherwise serve the API.
    if len(sys.argv) > 1 and sys.argv[1] == "run":
        sys.argv.pop(1)
        from run_local import main
    else:
        from server import main
    main()
