"""Chat turn core: context assembly, stream reframing, cancellation and orchestration."""
