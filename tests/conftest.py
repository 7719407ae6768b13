import sys
from pathlib import Path

LAMBDA_DIR = str(Path(__file__).resolve().parents[1] / "lambda")
if LAMBDA_DIR not in sys.path:
    sys.path.insert(0, LAMBDA_DIR)
