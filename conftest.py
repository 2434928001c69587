import os
import sys


ROOT = os.path.dirname(__file__)
os.environ.setdefault("INCIDENT_REDIS_URL", "redis://localhost:6379/15")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
