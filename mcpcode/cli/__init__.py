"""mcpcode command-line interface."""
