# groq integration constants

DEFAULT_MODEL = 'llama-3.3-70b-versatile'

# Default settings for different task types
TASK_SETTINGS = {
    'response_generation': {
        'temperature': 0.3,
        'max_completion_tokens': 1500,
    },
    'email_classification': {
        'temperature': 0.1,
        'max_completion_tokens': 200,
    },
    'conversation_summary': {
        'temperature': 0.2,
        'max_completion_tokens': 500,
    },
}
