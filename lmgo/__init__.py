"""lmgo: a local supervisor for llama.cpp-style inference servers."""
