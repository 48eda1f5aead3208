"""
Azure AI Foundry service module.

Chat completions used to write the narrative feedback report at the end of a
practice session.
"""

from typing import Dict, List, Optional

from openai import AzureOpenAI

import config


class AzureFoundryService:
    """
    Service class for interacting with Azure AI Foundry chat completions.
    """

    def __init__(self):
        """Initialize the Azure AI Foundry client."""
        self.client = AzureOpenAI(
            azure_endpoint=config.AZURE_FOUNDRY_ENDPOINT,
            api_key=config.AZURE_FOUNDRY_KEY,
            api_version=config.AZURE_FOUNDRY_API_VERSION,
        )
        self.deployment_name = config.FOUNDRY_DEPLOYMENT_NAME

    def chat_completion(
        self,
        messages: List[Dict[str, str]],
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        json_response: bool = False,
    ) -> str:
        """
        Get a non-streaming chat completion from Azure AI Foundry.

        Args:
            messages: List of message dictionaries with 'role' and 'content'
            system_prompt: Optional system prompt to prepend to messages
            max_tokens: Optional max response length
            temperature: Optional sampling temperature (0-1)
            json_response: Ask the model for a JSON object

        Returns:
            str: The assistant's response content

        Raises:
            openai.OpenAIError: If the API call fails
        """
        messages = list(messages)
        if system_prompt and not any(msg.get("role") == "system" for msg in messages):
            messages.insert(0, {"role": "system", "content": system_prompt})
        kwargs = {"model": self.deployment_name, "messages": messages}
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if temperature is not None:
            kwargs["temperature"] = float(temperature)
        if json_response:
            kwargs["response_format"] = {"type": "json_object"}
        response = self.client.chat.completions.create(**kwargs)
        return response.choices[0].message.content


# Lazy singleton: initialized on first use to avoid loading the SDK client at import time
_foundry_service: Optional[AzureFoundryService] = None


def get_foundry_service() -> AzureFoundryService:
    """Return the Azure AI Foundry service instance, creating it on first call (lazy init)."""
    global _foundry_service
    if _foundry_service is None:
        _foundry_service = AzureFoundryService()
    return _foundry_service
