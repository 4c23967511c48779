"""Format validators.

One validator per externally visible PII type.  Each validator follows the
same contract::

    def validate(text: str, *, context: str | None = None,
                 offset: int | None = None) -> ValidationResult:
        ...

and rejects input longer than its ``max_length`` before any pattern is
applied.  Look validators up through ``registry.get_validator_for_type``.
"""
