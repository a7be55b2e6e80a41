"""
Training LLM Service for the simulated client's replies and transcript scoring.
"""
import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from openai import AsyncOpenAI

from trainer.core.config import settings
from trainer.core.exceptions import ConversationGenerationError, EvaluationScoringError
from trainer.core.training_config import training_config
from trainer.schemas.training import ClientPersona, ScenarioContext, Sender, Turn

logger = logging.getLogger(__name__)

# Sent as the only user message when the client should open the call
SESSION_START_PROMPT = "[INICIO_SESION]"

EMOTION_DESCRIPTIONS = {
    "curious": "curioso, haces preguntas y quieres entender bien la oferta",
    "skeptical": "escéptico, desconfías de las promesas y pides pruebas",
    "hurried": "apurado, tienes poco tiempo y quieres respuestas directas",
    "annoyed": "molesto, la llamada te interrumpe y lo dejas notar",
    "interested": "interesado, ya tienes una necesidad y buscas una solución",
    "neutral": "neutral, escuchas con cortesía sin comprometerte",
}

JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")


class TrainingLLMService:
    """Makes the OpenAI calls for a training session: client replies and final scoring."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.client = client
        self.model = model or settings.openai_model

        if self.client is None:
            if not settings.openai_api_key:
                logger.warning("No OpenAI API key found. Replies and scoring will fail until one is configured.")
            else:
                try:
                    self.client = AsyncOpenAI(api_key=settings.openai_api_key)
                    logger.info("OpenAI client initialized successfully for training LLM service")
                except Exception as e:
                    logger.error(f"Failed to initialize OpenAI client: {e}")
                    self.client = None

    async def generate_reply(
        self,
        history: Sequence[Turn],
        scenario: ScenarioContext,
        persona: ClientPersona,
        prompt: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Generate the simulated client's next line.

        Args:
            history: Transcript so far, oldest first
            scenario: Scenario being practiced
            persona: Client persona (emotional stance drives tone)
            prompt: Extra user message appended after the history, e.g. SESSION_START_PROMPT
            timeout: Seconds before the call is abandoned

        Returns:
            Reply text, never empty

        Raises:
            ConversationGenerationError: no client, timeout, API failure or empty reply
        """
        if not self.client:
            raise ConversationGenerationError("OpenAI client not configured")

        timeout = timeout or training_config.REPLY_TIMEOUT_SECONDS
        messages = self._build_reply_messages(history, scenario, persona, prompt)

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    max_tokens=150,
                    temperature=0.8,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"OpenAI reply call timed out after {timeout} seconds")
            raise ConversationGenerationError("Reply generation timed out")
        except Exception as e:
            logger.error(f"Error generating client reply: {str(e)}")
            raise ConversationGenerationError(str(e)) from e

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise ConversationGenerationError(f"Malformed completion: {e}") from e

        if not content or not content.strip():
            raise ConversationGenerationError("Empty reply from language model")
        return content.strip()

    async def score_transcript(
        self,
        transcript: str,
        scenario: ScenarioContext,
        duration_seconds: int,
        stats: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Score a rendered transcript.

        Returns:
            The parsed JSON object as a dict (scores may still need normalizing)

        Raises:
            EvaluationScoringError: no client, timeout, API failure, non-JSON or non-object output
        """
        if not self.client:
            raise EvaluationScoringError("OpenAI client not configured")

        timeout = timeout or training_config.EVALUATION_TIMEOUT_SECONDS
        prompt = self._build_evaluation_prompt(transcript, scenario, duration_seconds, stats or {})

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {
                            "role": "system",
                            "content": "Eres un evaluador experto en ventas. Responde siempre con JSON válido en el formato solicitado.",
                        },
                        {"role": "user", "content": prompt},
                    ],
                    max_tokens=1500,
                    temperature=0.3,
                    response_format={"type": "json_object"},
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"OpenAI scoring call timed out after {timeout} seconds")
            raise EvaluationScoringError("Scoring timed out")
        except Exception as e:
            logger.error(f"Error scoring transcript: {str(e)}")
            raise EvaluationScoringError(str(e)) from e

        try:
            raw_content = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise EvaluationScoringError(f"Malformed completion: {e}") from e

        return self.parse_evaluation_content(raw_content)

    @staticmethod
    def parse_evaluation_content(raw_content: Optional[str]) -> Dict[str, Any]:
        """Parse the scorer's output, extracting the outermost {...} when the model adds prose."""
        if not raw_content:
            raise EvaluationScoringError("Empty scoring response")

        try:
            data = json.loads(raw_content)
        except json.JSONDecodeError:
            match = JSON_OBJECT_PATTERN.search(raw_content)
            if not match:
                raise EvaluationScoringError("Scoring response is not JSON")
            try:
                data = json.loads(match.group(0))
            except json.JSONDecodeError as e:
                raise EvaluationScoringError(f"Failed to parse scoring JSON: {e}") from e

        if not isinstance(data, dict):
            raise EvaluationScoringError("Scoring response is not a JSON object")
        return data

    def _build_reply_messages(
        self,
        history: Sequence[Turn],
        scenario: ScenarioContext,
        persona: ClientPersona,
        prompt: Optional[str],
    ) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": self._build_system_prompt(scenario, persona)}]

        window = training_config.REPLY_HISTORY_WINDOW
        recent = list(history)[-window:] if window > 0 else []
        for turn in recent:
            # The model plays the client, so the trainee is the "user"
            role = "user" if turn.sender == Sender.USER else "assistant"
            messages.append({"role": role, "content": turn.text})

        if prompt:
            messages.append({"role": "user", "content": prompt})
        return messages

    def _build_system_prompt(self, scenario: ScenarioContext, persona: ClientPersona) -> str:
        emotion = EMOTION_DESCRIPTIONS.get(persona.emotion, EMOTION_DESCRIPTIONS["neutral"])
        lines = [
            "Eres un cliente simulado en un entrenamiento de ventas. El usuario es un vendedor que practica contigo.",
            f"Escenario: {scenario.title}.",
        ]
        if scenario.description:
            lines.append(f"Contexto: {scenario.description}")
        if scenario.instructions:
            lines.append(f"Instrucciones de comportamiento: {scenario.instructions}")
        lines.extend([
            f"Tu estado emocional: {emotion}.",
            "Responde siempre en español, con 1 a 3 frases, como lo haría una persona real por teléfono.",
            "Mantén la coherencia con tu perfil durante toda la conversación y nunca digas que eres una IA.",
            f"Si recibes {SESSION_START_PROMPT}, contesta la llamada con tu primera frase.",
        ])
        return "\n".join(lines)

    def _build_evaluation_prompt(
        self,
        transcript: str,
        scenario: ScenarioContext,
        duration_seconds: int,
        stats: Dict[str, Any],
    ) -> str:
        minutes = round(duration_seconds / 60, 1) if duration_seconds else 0
        return f"""Evalúa de forma estricta la siguiente sesión de entrenamiento de ventas.

ESCENARIO: {scenario.title}
DESCRIPCIÓN: {scenario.description or 'Sin descripción'}
DURACIÓN: {minutes} minutos
MENSAJES: {stats.get('total_messages', 0)} (palabras del vendedor: {stats.get('user_words_count', 0)})

TRANSCRIPCIÓN:
{transcript}

Califica cada dimensión de 0 a 100:
- 0-30: deficiente, errores graves o ausencia de la habilidad
- 31-50: insuficiente, la habilidad aparece pero con fallos claros
- 51-70: aceptable, cumple lo básico
- 71-85: bueno, manejo sólido
- 86-100: excelente, nivel profesional

Dimensiones: rapport (conexión con el cliente), claridad, empatía y precisión (descubrimiento de necesidades, información correcta).
Penaliza hablar de precio antes de entender las necesidades del cliente.

Responde SOLO con un objeto JSON con estas claves:
{{
  "overall_score": número,
  "rapport_score": número,
  "clarity_score": número,
  "empathy_score": número,
  "accuracy_score": número,
  "strengths": [lista de fortalezas],
  "critical_errors": [lista de errores críticos],
  "improvements": [lista de mejoras concretas],
  "specific_feedback": "párrafo de retroalimentación",
  "coaching_tips": [lista de consejos],
  "next_steps": [lista de próximos pasos]
}}"""
