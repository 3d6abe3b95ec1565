"""
This module contains the configuration settings for the cloudlibs tooling.
It defines paths, signal store settings, supervisor limits and logging options.
It is used throughout the package to ensure consistent settings and paths.
"""

import os
import sys
import pathlib
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=True)

#* --- Core Paths ---
BASE_DIR = pathlib.Path(__file__).resolve().parent.parent  # Project Root
STATE_DIR = pathlib.Path(os.getenv("CLOUDLIBS_STATE_DIR", str(BASE_DIR / "state")))
LOGS_DIR = pathlib.Path(os.getenv("CLOUDLIBS_LOGS_DIR", str(BASE_DIR / "logs")))

#* --- Signal Store ---
# Every signal is a zero-byte marker file directly inside this directory.
SIGNAL_BASE_PATH = pathlib.Path(os.getenv("CLOUDLIBS_SIGNAL_PATH", "/tmp/f5-cloud-libs-signals"))
SIGNAL_POLL_INTERVAL = float(os.getenv("CLOUDLIBS_SIGNAL_POLL_INTERVAL", "0.1"))  # seconds
SIGNAL_WATCH_ENABLED = os.getenv("CLOUDLIBS_SIGNAL_WATCH", "False").lower() in ('true', '1', 't')

#* --- Application File Paths ---
PID_FILE_PATH = STATE_DIR / "run_scripts.pid"
OVERRIDES_JSON_PATH = STATE_DIR / "overrides.json"
LOG_FILE_PATH = LOGS_DIR / "run_scripts.log"

#* --- Worker Modules ---
# Onboarding and clustering are external programs, launched with `python -m`.
ONBOARD_MODULE = os.getenv("CLOUDLIBS_ONBOARD_MODULE", "onboard")
CLUSTER_MODULE = os.getenv("CLOUDLIBS_CLUSTER_MODULE", "cluster")
SCRIPT_MODULE = os.getenv("CLOUDLIBS_SCRIPT_MODULE", "cloudlibs.workflow.run_script")
SCRIPTS_CWD = pathlib.Path(os.getenv("CLOUDLIBS_SCRIPTS_CWD", str(BASE_DIR)))

#* --- Python Executable Configuration ---
PYTHON_EXECUTABLE = os.getenv("PYTHON_EXECUTABLE", sys.executable)

#* --- Supervisor Settings ---
MAX_SCRIPT_ATTEMPTS = 3
SUPERVISOR_PROCESS_TITLE = "CloudLibs - Supervisor"
SCRIPT_PROCESS_TITLE = "CloudLibs - Script"

#* --- Logging ---
LOG_BUFFER_FLUSH_INTERVAL = 10
LOKI_ENABLED = os.getenv("LOKI_ENABLED", "False").lower() in ('true', '1', 't')
LOKI_URL = os.getenv("LOKI_URL", "http://localhost:3100")
LOKI_ORG_ID = os.getenv("LOKI_ORG_ID", "fake")

#* --- MODIFIABLE SETTINGS (Changeable through overrides.json) ---
MODIFIABLE_SETTINGS = {
    "SIGNAL_POLL_INTERVAL", "SIGNAL_WATCH_ENABLED",
    "MAX_SCRIPT_ATTEMPTS",
    "LOG_BUFFER_FLUSH_INTERVAL",
}
