"""Scanner drop-folder intake."""
