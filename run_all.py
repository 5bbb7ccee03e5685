"""
ParkWise – run_all.py
Convenience launcher: seeds demo data on first run, then starts the API.
Run: python run_all.py
"""
import subprocess, sys, time, webbrowser, os
from dotenv import load_dotenv

load_dotenv()

def main():
    print("\n ParkWise – Starting services …\n")
    port = os.getenv("API_PORT", "8000")

    # 1. Seed if DB missing
    if not os.path.exists("parkwise.db"):
        print(" Seeding database …")
        subprocess.run([sys.executable, "scripts/seed_demo.py"], check=True)

    # 2. Start FastAPI
    api = subprocess.Popen([
        sys.executable, "-m", "uvicorn", "main:app",
        "--host", "0.0.0.0", "--port", port, "--reload"
    ])
    print(f" ✓ API starting on http://localhost:{port}")
    time.sleep(3)

    webbrowser.open(f"http://localhost:{port}/docs")
    print("\n Press Ctrl+C to stop.\n")

    try:
        api.wait()
    except KeyboardInterrupt:
        print("\n Shutting down …")
        api.terminate()

if __name__ == "__main__":
    main()
