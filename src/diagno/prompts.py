import json
from typing import Any

SYSTEM_PROMPT = """Tu es dIAgno, un assistant médical IA français spécialisé dans l'évaluation des symptômes et l'orientation médicale.

RÈGLES IMPORTANTES:
- Réponds TOUJOURS en français
- Sois empathique et professionnel
- Ne pose JAMAIS de diagnostic définitif
- Oriente vers une consultation médicale quand nécessaire
- Pose des questions pertinentes pour évaluer les symptômes
- Utilise une échelle de 1 à 10 pour l'intensité des symptômes

PROCESSUS:
1. Écoute les symptômes
2. Pose des questions de précision
3. Évalue le niveau d'urgence
4. Recommande les actions appropriées

NIVEAUX D'URGENCE:
- URGENT: Consultation immédiate (SAMU: 15)
- PRIORITAIRE: Consultation dans 24-48h
- NORMAL: Consultation dans la semaine
- SURVEILLANCE: Auto-soins avec suivi"""

CHAT_PROXY_PROMPT = "Tu es dIAgno, assistant médical IA français. Sois empathique et professionnel."

WELCOME_MESSAGE = (
    "Bonjour ! Je suis dIAgno, votre assistant médical IA. "
    "Comment puis-je vous aider aujourd'hui ?"
)
TECHNICAL_ERROR_MESSAGE = "Désolé, une erreur technique s'est produite. Veuillez réessayer."
ANALYSIS_ERROR_MESSAGE = "Désolé, l'analyse des symptômes a échoué. Veuillez réessayer."
EMPTY_MESSAGE_ERROR = "Message vide : décrivez vos symptômes."
IMAGE_NOT_SUPPORTED_MESSAGE = (
    "L'analyse d'images sera bientôt disponible. "
    "En attendant, décrivez-moi ce que vous observez."
)
IMAGE_RECEIVED_MESSAGE = "Image reçue. L'analyse sera bientôt disponible."
CHAT_PROXY_ERROR = "Erreur lors de la consultation IA"

# Voice agent defaults (ElevenLabs Conversational AI)
VOICE_AGENT_PROMPT = (
    "You are a medical AI assistant specialized in appointment booking and health data analysis. "
    "Use the Mistral AI tool for medical queries. Be empathetic and professional."
)
VOICE_AGENT_FIRST_MESSAGE = "Hello! How can I help you today?"
VOICE_AGENT_MODEL = "eleven_multilingual_v2"
DEFAULT_VOICE_SETTINGS = {
    "stability": 0.5,
    "similarity_boost": 0.7,
    "style": 0.0,
    "use_speaker_boost": True,
}
DEFAULT_TURN_DETECTION = {
    "type": "server_vad",
    "threshold": 0.5,
    "prefix_padding_ms": 300,
    "silence_duration_ms": 500,
}


def build_analysis_prompt(symptoms: Any) -> str:
    """Structured-output prompt for a symptom analysis request."""
    return f"""Analyse ces symptômes pour l'application médicale dIAgno:
{json.dumps(symptoms, ensure_ascii=False)}

Fournis:
1. Une évaluation du niveau d'urgence (1-5)
2. Les questions importantes à poser
3. Les recommandations d'action
4. Les spécialistes potentiels à consulter

Réponds en JSON avec cette structure:
{{
  "urgency": 1-5,
  "questions": ["question1", "question2"],
  "recommendations": "recommandations détaillées",
  "specialists": ["spécialiste1", "spécialiste2"]
}}"""


def build_relay_messages(history: list[dict]) -> list[dict]:
    return [{"role": "system", "content": SYSTEM_PROMPT}, *history]
