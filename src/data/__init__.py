"""Adaptadores de red: API REST de jobs y canales push/históricos."""
