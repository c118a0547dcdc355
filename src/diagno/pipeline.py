import logging
import os
from typing import Optional

import aiohttp
from fastapi import WebSocket
from pipecat.audio.vad.silero import SileroVADAnalyzer
from pipecat.audio.vad.vad_analyzer import VADParams
from pipecat.frames.frames import EndFrame
from pipecat.pipeline.pipeline import Pipeline
from pipecat.pipeline.runner import PipelineRunner
from pipecat.pipeline.task import PipelineParams, PipelineTask
from pipecat.serializers.protobuf import ProtobufFrameSerializer
from pipecat.services.deepgram.stt import DeepgramSTTService
from pipecat.services.deepgram.tts import DeepgramHttpTTSService
from pipecat.transports.websocket.fastapi import (
    FastAPIWebsocketParams,
    FastAPIWebsocketTransport,
)

from diagno.capture import CaptureAdapter, MediaTrack
from diagno.controller import ConsultationController
from diagno.processor import AudioGateProcessor, ConsultationProcessor, TransportMediaDevices
from diagno.replies import ReplySource, build_reply_source

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000


async def create_consultation_pipeline(websocket: WebSocket, replies: Optional[ReplySource] = None):
    """Run one live voice consultation over an accepted WebSocket."""
    transport = FastAPIWebsocketTransport(
        websocket=websocket,
        params=FastAPIWebsocketParams(
            audio_in_enabled=True,
            audio_out_enabled=True,
            add_wav_header=False,
            vad_analyzer=SileroVADAnalyzer(
                params=VADParams(
                    confidence=0.7,
                    start_secs=0.2,
                    stop_secs=0.8,   # let the patient finish describing a symptom
                ),
            ),
            serializer=ProtobufFrameSerializer(),
        ),
    )

    stt = DeepgramSTTService(api_key=os.getenv("DEEPGRAM_API_KEY"))

    http_session = aiohttp.ClientSession()
    tts = DeepgramHttpTTSService(
        api_key=os.getenv("DEEPGRAM_API_KEY"),
        aiohttp_session=http_session,
        voice=os.getenv("DEEPGRAM_TTS_VOICE", "aura-2-helena-en"),
        sample_rate=SAMPLE_RATE,
        encoding="linear16",
    )

    audio_track = MediaTrack("audio")
    video_track = MediaTrack("video")
    gate = AudioGateProcessor(audio_track)
    consultation = ConsultationProcessor()
    adapter = CaptureAdapter(
        TransportMediaDevices(audio_track, video_track),
        recognizer=consultation.recognizer,
        synthesizer=consultation.synthesizer,
    )
    replies = replies or build_reply_source()
    controller = ConsultationController(
        adapter,
        replies,
        on_status=lambda message: logger.info("Status: %s", message),
    )

    pipeline = Pipeline([
        transport.input(),
        gate,
        stt,
        consultation,
        tts,
        transport.output(),
    ])

    task = PipelineTask(
        pipeline,
        params=PipelineParams(
            audio_in_sample_rate=SAMPLE_RATE,
            audio_out_sample_rate=SAMPLE_RATE,
            allow_interruptions=True,
        ),
    )

    # STT errors are pushed upstream and never pass through the consultation processor.
    stt.event_handler("on_error")(consultation.on_stt_error)

    @transport.event_handler("on_client_connected")
    async def on_connected(transport, client):
        logger.info("Consultation client connected")
        await controller.start()

    @transport.event_handler("on_client_disconnected")
    async def on_disconnected(transport, client):
        logger.info("Consultation client disconnected, ending pipeline")
        controller.end_call()
        await task.queue_frames([EndFrame()])

    runner = PipelineRunner(handle_sigint=False)
    try:
        await runner.run(task)
    finally:
        controller.end_call()
        await replies.close()
        await http_session.close()

    logger.info("Consultation ended after %d user turns", controller.call.message_count)
