"""PQA command-line interface."""
