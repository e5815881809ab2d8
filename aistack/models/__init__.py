"""Model cache types, state persistence, eviction and the LocalAI and Ollama managers."""