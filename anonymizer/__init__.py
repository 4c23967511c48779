"""Multilingual PII detection core for Swiss and EU documents."""
