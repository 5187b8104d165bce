"""Pure domain layer of the kernel: time, amounts, contract lifecycle."""
