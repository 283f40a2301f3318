"""Run engine: data model, validation, evaluation and scheduling."""
