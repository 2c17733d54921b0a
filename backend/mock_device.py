#!/usr/bin/env python3
"""
Helios Voice Narrator Mock Device
Stands in for the phone: streams an image as camera frames, turns typed
lines into recognized speech and "speaks" server utterances by printing
them and acknowledging after a simulated duration.
"""

import argparse
import base64
import sys
import threading
import time
from pathlib import Path

import socketio
from colorama import Fore, Style, init

# Initialize colorama for cross-platform colored output
init(autoreset=True)

# Create Socket.IO client
sio = socketio.Client()

# Seconds of simulated speech per word
SECONDS_PER_WORD = 0.05

# Device-side state mirrored from server commands
recognizer_running = False
pending_utterances = {}
stop_streaming = threading.Event()


def print_header(text):
    """Print a styled header."""
    print(f"\n{Fore.CYAN}{'=' * 70}")
    print(f"{Fore.CYAN}{text.center(70)}")
    print(f"{Fore.CYAN}{'=' * 70}{Style.RESET_ALL}\n")


def print_success(text):
    """Print success message in green."""
    print(f"{Fore.GREEN}✓ {text}{Style.RESET_ALL}")


def print_error(text):
    """Print error message in red."""
    print(f"{Fore.RED}✗ {text}{Style.RESET_ALL}")


def print_warning(text):
    """Print warning message in yellow."""
    print(f"{Fore.YELLOW}⚠  {text}{Style.RESET_ALL}")


def load_and_encode_image(image_path: str) -> str:
    """
    Load a local image file and convert it to Base64 string.

    Args:
        image_path: Path to the image file

    Returns:
        str: Base64 encoded image with data URL prefix
    """
    try:
        with open(image_path, 'rb') as image_file:
            image_data = image_file.read()

        base64_string = base64.b64encode(image_data).decode('utf-8')
        data_url = f"data:image/jpeg;base64,{base64_string}"

        file_size_kb = len(image_data) / 1024
        print_success(f"Loaded image: {image_path} ({file_size_kb:.1f} KB)")

        return data_url

    except FileNotFoundError:
        print_error(f"Image file not found: {image_path}")
        sys.exit(1)
    except Exception as e:
        print_error(f"Failed to load image: {e}")
        sys.exit(1)


# ============================================================================
# SERVER EVENTS
# ============================================================================

@sio.event
def connect():
    print_success("Connected to Helios Voice Narrator")


@sio.event
def disconnect():
    print_warning("Disconnected from server")


@sio.event
def recognition_start(data):
    global recognizer_running
    recognizer_running = True
    print(f"{Fore.BLUE}🎤 Microphone on ({data.get('lang')}){Style.RESET_ALL}")


@sio.event
def recognition_stop(data=None):
    global recognizer_running
    recognizer_running = False
    print(f"{Fore.BLUE}🎤 Microphone off{Style.RESET_ALL}")


@sio.event
def speak(data):
    """Print the utterance and report it finished after a simulated duration."""
    utterance_id = data['utterance_id']
    text = data['text']
    print(f"{Fore.MAGENTA}🔊 [{utterance_id}] {text}{Style.RESET_ALL}")

    duration = max(0.3, len(text.split()) * SECONDS_PER_WORD)
    timer = threading.Timer(duration, finish_utterance, args=(utterance_id,))
    pending_utterances[utterance_id] = timer
    timer.start()


def finish_utterance(utterance_id):
    if pending_utterances.pop(utterance_id, None) is None:
        return
    sio.emit('utterance_end', {'utterance_id': utterance_id})


@sio.event
def speech_cancel(data=None):
    for utterance_id, timer in list(pending_utterances.items()):
        timer.cancel()
        pending_utterances.pop(utterance_id, None)
        sio.emit('utterance_error', {'utterance_id': utterance_id, 'error': 'interrupted'})
    print(f"{Fore.YELLOW}⏹ Speech cancelled{Style.RESET_ALL}")


@sio.event
def state_changed(data):
    print(f"{Style.DIM}   state: {data['state']} ({data['reason']}){Style.RESET_ALL}")


@sio.event
def narration(data):
    if data.get('silent'):
        print(f"{Fore.CYAN}📝 {data['text']}{Style.RESET_ALL}")


@sio.event
def error(data):
    print_error(f"Server error: {data.get('message')}")


# ============================================================================
# DEVICE LOOPS
# ============================================================================

def stream_frames(frame: str, interval: float):
    """Send the same image as the live camera feed."""
    while not stop_streaming.is_set():
        try:
            sio.emit('video_frame', {'frame': frame})
        except Exception as e:
            print_error(f"Failed to send frame: {e}")
        stop_streaming.wait(interval)


def say(text: str):
    """Simulate the user speaking one utterance."""
    sio.emit('speech_started')
    sio.emit('speech_result', {'text': text, 'is_final': True})


def main():
    parser = argparse.ArgumentParser(
        description='Mock phone client for the Helios Voice Narrator server'
    )
    parser.add_argument(
        'image_path',
        type=str,
        help='Image to stream as the camera feed (JPG)'
    )
    parser.add_argument(
        '--server',
        type=str,
        default='http://localhost:8000',
        help='Server URL (default: http://localhost:8000)'
    )
    parser.add_argument(
        '--fps',
        type=float,
        default=1.0,
        help='Camera frames per second (default: 1)'
    )

    args = parser.parse_args()

    if not Path(args.image_path).exists():
        print_error(f"Image file not found: {args.image_path}")
        sys.exit(1)

    print_header("HELIOS MOCK DEVICE")

    print(f"{Fore.CYAN}[1/3] Loading image...{Style.RESET_ALL}")
    frame = load_and_encode_image(args.image_path)

    print(f"\n{Fore.CYAN}[2/3] Connecting to server at {args.server}...{Style.RESET_ALL}")
    try:
        sio.connect(args.server)
    except Exception as e:
        print_error(f"Failed to connect to server: {e}")
        print_warning("Make sure the server is running: python server.py")
        sys.exit(1)

    streamer = threading.Thread(target=stream_frames, args=(frame, 1.0 / args.fps), daemon=True)
    streamer.start()
    time.sleep(0.5)

    print(f"\n{Fore.CYAN}[3/3] Starting voice session...{Style.RESET_ALL}")
    sio.emit('start_session')
    print_success("Type what you would say. '/deny' simulates a microphone failure, '/quit' exits.")

    try:
        for line in sys.stdin:
            text = line.strip()
            if not text:
                continue
            if text == '/quit':
                break
            if text == '/deny':
                sio.emit('recognition_error', {'error': 'not-allowed'})
                continue
            if not recognizer_running:
                print_warning("Microphone is off, the server will ignore this")
            say(text)
    except KeyboardInterrupt:
        pass

    stop_streaming.set()
    sio.emit('stop_session')
    time.sleep(0.5)
    sio.disconnect()
    print_header("SESSION ENDED")


if __name__ == "__main__":
    main()
