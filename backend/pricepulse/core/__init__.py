"""Cross-cutting helpers: exceptions, logging setup, time handling."""
