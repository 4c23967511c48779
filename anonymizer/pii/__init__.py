"""Entity model and the candidate, validation and context passes."""
