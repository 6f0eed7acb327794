"""Repository management."""
