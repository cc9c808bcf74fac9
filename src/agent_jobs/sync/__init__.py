"""Working-directory synchronization with object storage and git."""
