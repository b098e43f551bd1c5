from fastapi import Depends
from services.audit import get_audit_logger
from services.cache import get_cache_client
from auth.security import get_current_client, get_current_actor
from data.database import get_db

# --- DEPENDENCY INJECTION SETUP ---
CLIENT_AUTH = Depends(get_current_client)
ACTOR = Depends(get_current_actor)
DB_DEPENDENCY = Depends(get_db)
CACHE_CLIENT = Depends(get_cache_client)
AUDIT_LOGGER = Depends(get_audit_logger)
