"""Document-type classification and type-specific extraction rules.

Rule sets for every document type except ``letter`` are YAML files in
``rule_sets/``; ``letter`` rules are implemented in ``letter_rules.py``.
"""
