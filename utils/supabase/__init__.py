"""
Supabase utility module for interacting with the Supabase database.
"""

from .db_client import CustomJSONEncoder, get_supabase_client, to_json_row

__all__ = [
    'CustomJSONEncoder',
    'get_supabase_client',
    'to_json_row',
]
