"""Help-desk inbox and chat-flow automation engine."""
