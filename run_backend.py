import os
import subprocess
import sys

from canarypilot.web.backend.main import PORT


def check_dependencies():
    missing = []
    try:
        import fastapi
    except ImportError:
        missing.append("fastapi")

    try:
        import uvicorn
    except ImportError:
        missing.append("uvicorn")

    if missing:
        print("Missing backend dependencies.")
        print(f"Please run: pip install {' '.join(missing)}")
        sys.exit(1)


if __name__ == "__main__":
    check_dependencies()
    port = int(os.environ.get("CANARYPILOT_PORT", PORT))
    print(f"Starting canarypilot backend on http://localhost:{port}")

    args = [
        sys.executable,
        "-m",
        "uvicorn",
        "canarypilot.web.backend.main:app",
        "--host",
        "0.0.0.0",
        "--port",
        f"{port}",
    ]
    if os.environ.get("CANARYPILOT_BACKEND_RELOAD", "0") == "1":
        args.append("--reload")

    try:
        subprocess.run(args, check=True)
    except KeyboardInterrupt:
        print("\nStopping server...")
