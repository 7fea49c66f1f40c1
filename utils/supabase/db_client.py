#!/usr/bin/env python3
"""
Supabase client utility for the portfolio store.

Credentials come from the environment (``SUPABASE_URL`` and
``SUPABASE_SERVICE_ROLE_KEY``), loaded from a ``.env`` file when present.
"""

import os
import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from dotenv import load_dotenv
from supabase import create_client, Client

logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()


class CustomJSONEncoder(json.JSONEncoder):
    """JSON encoder for the values the ledger writes (UUIDs, Decimals, dates)."""
    def default(self, obj):
        if isinstance(obj, UUID):
            return str(obj)
        elif isinstance(obj, Decimal):
            return float(obj)
        elif isinstance(obj, (date, datetime)):
            return obj.isoformat()
        return super().default(obj)


def get_supabase_client(url: Optional[str] = None, service_key: Optional[str] = None) -> Client:
    """
    Create and return a Supabase client using the service role key.
    This provides admin access to the database for server-side operations.

    Args:
        url: Project URL, defaults to SUPABASE_URL
        service_key: Service role key, defaults to SUPABASE_SERVICE_ROLE_KEY

    Returns:
        Client: Initialized Supabase client
    """
    supabase_url = url or os.getenv("SUPABASE_URL")
    supabase_service_key = service_key or os.getenv("SUPABASE_SERVICE_ROLE_KEY")

    if not supabase_url or not supabase_service_key:
        logger.error("Supabase URL or service role key not found in environment variables")
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")

    try:
        return create_client(supabase_url, supabase_service_key)
    except Exception as e:
        logger.error(f"Failed to create Supabase client: {e}")
        raise


def to_json_row(row: dict) -> dict:
    """Round-trip a row through the encoder so Decimals and dates are JSON-safe."""
    return json.loads(json.dumps(row, cls=CustomJSONEncoder))
