"""Task board synchronization engine and its HTTP surface."""
