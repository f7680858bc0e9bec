"""Per-process memory usage (RSS, PSS, USS) sampled from /proc."""
