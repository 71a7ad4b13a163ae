"""Directory service clients: Microsoft Graph (primary) and Exchange Online (fallback)."""
