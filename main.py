# ============================================================
# main.py — Punto de entrada del monitor de backtests
# ------------------------------------------------------------
# Arregla el problema de imports añadiendo /src al sys.path
# ANTES de importar módulos del paquete "core.*".
#
# Además:
#  - Carga .env pronto (API_URL, API_TOKEN, LOG_LEVEL, ...)
#  - Delega en tools/watch_job.py (mismos argumentos)
# ============================================================

from pathlib import Path
import sys

# --- 1) AÑADIR ./src (y la raíz, por tools/) AL sys.path -------
PROJECT_ROOT = Path(__file__).parent
SRC_PATH = PROJECT_ROOT / "src"
for p in (SRC_PATH, PROJECT_ROOT):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

# --- 2) CARGAR .env ------------------------------------------
from dotenv import load_dotenv  # noqa: E402 (import tardío por orden lógico)

load_dotenv()

# --- 3) LANZAR EL MONITOR ------------------------------------
from tools.watch_job import main  # noqa: E402

if __name__ == "__main__":
    raise SystemExit(main())
