"""
Helios Voice Narrator Server
Hosts one narration coordinator per connected device over Socket.IO.
The device streams camera frames and speech events; the server decides
when to listen, what to analyze and what to say.
"""

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

import socketio
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from analysis_client import GeminiAnalysisClient
from coordinator import CoordinatorConfig, NarrationCoordinator, build_coordinator
from device_bridge import DeviceChannel, SocketRecognitionEngine, SocketSynthesisEngine
from narration import CoordinatorState, NarrationRequest

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv('HELIOS_LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global analysis client (created at startup, shared by all sessions)
analysis_client: Optional[GeminiAnalysisClient] = None

# Coordinator settings (read from HELIOS_* at startup)
coordinator_config = CoordinatorConfig()


@dataclass
class DeviceSession:
    """Everything the server holds for one connected device."""
    channel: DeviceChannel
    coordinator: NarrationCoordinator


# Active sessions per socket
device_sessions: Dict[str, DeviceSession] = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    global analysis_client, coordinator_config
    coordinator_config = CoordinatorConfig.from_env()
    try:
        logger.info("🤖 Initializing Gemini analysis client...")
        analysis_client = GeminiAnalysisClient(
            model=os.getenv('HELIOS_MODEL', 'gemini-2.5-flash')
        )
        logger.info("✓ Gemini analysis client initialized successfully")
    except Exception as e:
        logger.error(f"✗ Analysis client initialization failed: {e}")
    yield
    logger.info("🛑 Shutting down server...")
    for sid in list(device_sessions):
        await close_session(sid)


app = FastAPI(title="Helios Voice Narrator", lifespan=lifespan)
sio = socketio.AsyncServer(async_mode='asgi', cors_allowed_origins='*')
socket_app = socketio.ASGIApp(socketio_server=sio, other_asgi_app=app)


@app.get("/health")
async def health():
    """Health check with analysis backend status."""
    return {
        "status": "healthy",
        "analysis_ready": analysis_client is not None,
        "sessions": len(device_sessions),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# ============================================================================
# SESSION MANAGEMENT
# ============================================================================

def create_session(sid: str) -> DeviceSession:
    """Wire a coordinator to the device behind this socket."""
    channel = DeviceChannel(sio, sid)

    def on_state_change(state: CoordinatorState, reason: str):
        channel.send('state_changed', {'state': state.value, 'reason': reason})

    def on_narration(request: NarrationRequest, text: str):
        channel.send('narration', {
            'text': text,
            'purpose': request.purpose.value,
            'silent': request.silent,
        })

    coordinator = build_coordinator(
        SocketRecognitionEngine(channel, language=coordinator_config.language),
        SocketSynthesisEngine(channel),
        analysis_client,
        config=coordinator_config,
        on_state_change=on_state_change,
        on_narration=on_narration,
    )
    session = DeviceSession(channel=channel, coordinator=coordinator)
    device_sessions[sid] = session
    return session


async def close_session(sid: str):
    session = device_sessions.pop(sid, None)
    if session is None:
        return
    await session.coordinator.shutdown()
    await session.channel.close()


def get_session(sid: str) -> Optional[DeviceSession]:
    return device_sessions.get(sid)


# ============================================================================
# SOCKET.IO EVENTS
# ============================================================================

@sio.event
async def connect(sid, environ):
    logger.info(f"✓ Client connected: {sid}")


@sio.event
async def disconnect(sid):
    logger.info(f"✗ Client disconnected: {sid}")
    await close_session(sid)


@sio.event
async def start_session(sid, data=None):
    try:
        if analysis_client is None:
            await sio.emit('error', {
                'message': 'Analysis service not available'
            }, room=sid)
            return

        session = get_session(sid) or create_session(sid)
        session.coordinator.start_session()

    except Exception as e:
        logger.error(f"❌ Error starting session: {e}", exc_info=True)
        await sio.emit('error', {
            'message': f'Failed to start session: {str(e)}'
        }, room=sid)


@sio.event
async def stop_session(sid, data=None):
    session = get_session(sid)
    if session:
        session.coordinator.stop_session("device stop")


@sio.event
async def video_frame(sid, data):
    """
    Latest camera frame from the device.

    Expected data:
    {
        'frame': str    # Base64 JPEG (data URL prefix allowed)
    }
    """
    session = get_session(sid)
    if not session:
        return
    try:
        frame_base64 = data.get('frame')
        if not frame_base64:
            await sio.emit('error', {
                'message': 'Missing frame data'
            }, room=sid)
            return
        session.coordinator.vision.update_frame(frame_base64)
    except ValueError as e:
        await sio.emit('error', {
            'message': str(e)
        }, room=sid)


@sio.event
async def speech_started(sid, data=None):
    session = get_session(sid)
    if session:
        session.coordinator.speech_input.handle_speech_start()


@sio.event
async def speech_result(sid, data):
    """
    Recognition result from the device.

    Expected data:
    {
        'text': str,
        'is_final': bool
    }
    """
    session = get_session(sid)
    if not session:
        return
    try:
        session.coordinator.speech_input.handle_result(
            data.get('text', ''),
            bool(data.get('is_final', False))
        )
    except Exception as e:
        logger.error(f"❌ Error handling speech result: {e}", exc_info=True)
        await sio.emit('error', {
            'message': f'Failed to handle speech: {str(e)}'
        }, room=sid)


@sio.event
async def recognition_error(sid, data):
    session = get_session(sid)
    if session:
        session.coordinator.speech_input.handle_error(data.get('error', 'unknown'))


@sio.event
async def recognition_end(sid, data=None):
    session = get_session(sid)
    if session:
        session.coordinator.speech_input.handle_end()


@sio.event
async def utterance_end(sid, data):
    session = get_session(sid)
    if session:
        session.coordinator.speech_output.handle_utterance_end(data.get('utterance_id'))


@sio.event
async def utterance_error(sid, data):
    session = get_session(sid)
    if session:
        session.coordinator.speech_output.handle_utterance_error(
            data.get('utterance_id'),
            data.get('error', 'unknown')
        )


@sio.event
async def request_narration(sid, data):
    """
    Narration requested by an app widget rather than by voice.

    Expected data:
    {
        'prompt': str,
        'silent': bool,          # analyze and report, but don't speak
        'question': str          # optional user question for follow-ups
    }
    """
    session = get_session(sid)
    if not session:
        await sio.emit('error', {
            'message': 'No active session'
        }, room=sid)
        return
    prompt = data.get('prompt')
    if not prompt:
        await sio.emit('error', {
            'message': 'Missing prompt'
        }, room=sid)
        return
    session.coordinator.request_narration(
        prompt,
        silent=bool(data.get('silent', False)),
        question=data.get('question'),
    )


if __name__ == "__main__":
    uvicorn.run(
        socket_app,
        host=os.getenv('HELIOS_HOST', '0.0.0.0'),
        port=int(os.getenv('HELIOS_PORT', '8000')),
        log_level=os.getenv('HELIOS_LOG_LEVEL', 'info').lower()
    )
