from diagram_gen.clients.groq_client import Completion, GroqClient

__all__ = ["Completion", "GroqClient"]
