"""procpool command-line interface (typer)."""
