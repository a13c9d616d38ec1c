"""Queue controller: run lifecycle, dispatch sequencing and retry/pause policy."""
