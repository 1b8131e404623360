from .openai_compat import OpenAICompatibleBackend


class GroqBackend(OpenAICompatibleBackend):
    provider_name: str = "groq"
    default_model: str = "llama-3.1-8b-instant"
    base_url: str = "https://api.groq.com/openai/v1"
