from groq import Groq
from typing import Awaitable, Callable, Dict, List, Optional
from collections import deque
from dataclasses import dataclass
from datetime import datetime
import asyncio
import os
from dotenv import load_dotenv
import logging

from .constants import DEFAULT_MODEL, TASK_SETTINGS

logger = logging.getLogger(__name__)


class GroqCompletionError(Exception):
    """Raised when a completion request keeps failing after all retries."""


@dataclass
class CompletionResult:
    """Text and usage of one chat completion."""
    content: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class EnhancedGroqClient:
    """Enhanced Groq client with retry logic, error handling and in-process metrics."""

    def __init__(self,
                 api_key: Optional[str] = None,
                 model: Optional[str] = None,
                 max_retries: int = 3,
                 client: Optional[Groq] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """Initialize the enhanced Groq client with API key from environment or parameter."""
        load_dotenv(override=False)
        self.api_key = api_key or os.getenv('GROQ_API_KEY')
        if not self.api_key and client is None:
            raise ValueError("GROQ_API_KEY must be provided either through initialization or environment")

        self.client = client or Groq(api_key=self.api_key)
        self.model = model or os.getenv('GROQ_MODEL', DEFAULT_MODEL)
        self.max_retries = max_retries
        self._sleep = sleep

        self.metrics = {
            'requests': deque(maxlen=500),
            'errors': deque(maxlen=500),
            'performance': {
                'avg_response_time': 0,
                'total_requests': 0,
                'total_errors': 0,
                'success_rate': 100
            }
        }

    async def process_with_retry(self,
                                 messages: List[Dict],
                                 max_retries: Optional[int] = None,
                                 **kwargs):
        """Process a request with retry logic and error handling.

        Args:
            messages: List of message dictionaries for the conversation
            max_retries: Maximum number of attempts, defaults to the client setting
            **kwargs: Additional parameters for the API call

        Returns:
            Raw chat completion response

        Raises:
            GroqCompletionError: If every attempt failed
        """
        max_retries = max_retries or self.max_retries
        start_time = datetime.now()
        retries = 0
        last_error = None

        params = {
            'model': self.model,
            'temperature': 0.7,
            'max_completion_tokens': 4096,
            **kwargs,
            'messages': messages,
        }

        while retries < max_retries:
            try:
                response = await asyncio.to_thread(self.client.chat.completions.create, **params)

                self.record_success(start_time)
                return response

            except Exception as e:
                retries += 1
                last_error = str(e)
                self.record_error(last_error)

                if retries == max_retries:
                    logger.error(f"Failed after {max_retries} retries: {last_error}")
                    raise GroqCompletionError(f"Failed after {max_retries} retries: {last_error}")

                # Exponential backoff
                wait_time = 2 ** retries
                logger.warning(f"Attempt {retries} failed. Waiting {wait_time} seconds before retry...")
                await self._sleep(wait_time)

    async def complete(self, prompt: str, task: str = 'response_generation', **overrides) -> CompletionResult:
        """Run a single-turn completion using the settings of a task type.

        Args:
            prompt: User prompt
            task: Key of TASK_SETTINGS providing temperature and token budget
            **overrides: Parameters overriding the task settings

        Returns:
            CompletionResult with the generated text and token usage
        """
        settings = dict(TASK_SETTINGS.get(task, {}))
        settings.update({key: value for key, value in overrides.items() if value is not None})

        response = await self.process_with_retry(
            messages=[{'role': 'user', 'content': prompt}],
            **settings
        )

        choices = getattr(response, 'choices', None) or []
        content = (choices[0].message.content or '') if choices else ''
        usage = getattr(response, 'usage', None)

        return CompletionResult(
            content=content,
            model=getattr(response, 'model', None) or settings.get('model', self.model),
            prompt_tokens=getattr(usage, 'prompt_tokens', 0) or 0,
            completion_tokens=getattr(usage, 'completion_tokens', 0) or 0,
        )

    def record_success(self, start_time: datetime):
        """Record successful request metrics."""
        duration = (datetime.now() - start_time).total_seconds()
        self.metrics['requests'].append({
            'timestamp': datetime.now().isoformat(),
            'duration': duration,
            'status': 'success'
        })

        performance = self.metrics['performance']
        total_reqs = performance['total_requests'] + 1
        performance.update({
            'avg_response_time': (
                    (performance['avg_response_time'] * (total_reqs - 1) + duration)
                    / total_reqs
            ),
            'total_requests': total_reqs,
        })
        self._update_success_rate()

    def record_error(self, error_message: str):
        """Record error metrics."""
        self.metrics['errors'].append({
            'timestamp': datetime.now().isoformat(),
            'error': error_message
        })
        self.metrics['performance']['total_errors'] += 1
        self._update_success_rate()

    def _update_success_rate(self):
        performance = self.metrics['performance']
        attempts = performance['total_requests'] + performance['total_errors']
        if attempts:
            performance['success_rate'] = performance['total_requests'] / attempts * 100

    def get_performance_metrics(self) -> Dict:
        """Get current performance metrics."""
        return dict(self.metrics['performance'])
