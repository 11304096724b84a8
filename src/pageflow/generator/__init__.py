from .client import OpenAICompatibleGenerator, image_data_url

__all__ = ["OpenAICompatibleGenerator", "image_data_url"]
