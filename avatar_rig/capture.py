import logging
import queue
import threading
import time

import cv2
import mediapipe as mp
import numpy as np

from avatar_rig.landmarks import FrameObservation, empty_landmarks, to_array

logger = logging.getLogger(__name__)


def _rescale(landmarks, aspect):
    # x and z are normalized by image width, y by height; bring them to a
    # common unit so angles survive non-square frames
    if landmarks.size == 0:
        return landmarks
    return landmarks * np.array([aspect, 1.0, aspect])


def observation_from_results(results, timestamp, aspect=1.0):
    """Convert a MediaPipe Holistic result into a FrameObservation."""
    pose = empty_landmarks()
    visibility = None
    if results.pose_landmarks:
        pose = _rescale(to_array(results.pose_landmarks.landmark), aspect)
        visibility = np.array([lm.visibility for lm in results.pose_landmarks.landmark])

    pose_world = empty_landmarks()
    if results.pose_world_landmarks:
        pose_world = to_array(results.pose_world_landmarks.landmark)

    face = empty_landmarks()
    if results.face_landmarks:
        face = _rescale(to_array(results.face_landmarks.landmark), aspect)

    hands = {}
    for side in ("left", "right"):
        hand = getattr(results, f"{side}_hand_landmarks")
        if not hand:
            hands[side] = empty_landmarks()
            continue
        # Holistic has no hand world landmarks. Orientation is all the hand
        # solver needs, so the screen points are centered on the wrist.
        points = _rescale(to_array(hand.landmark), aspect)
        hands[side] = points - points[0]

    # Legacy Holistic exposes no blendshape scores
    return FrameObservation(
        timestamp=timestamp,
        pose_landmarks=pose,
        pose_world_landmarks=pose_world,
        face_landmarks=face,
        left_hand_world_landmarks=hands["left"],
        right_hand_world_landmarks=hands["right"],
        pose_visibility=visibility,
    )


class HolisticDetector:
    def __init__(self, min_detection_confidence=0.5, min_tracking_confidence=0.5, model_complexity=1):
        self.mp_holistic = mp.solutions.holistic
        self.holistic = self.mp_holistic.Holistic(
            min_detection_confidence=min_detection_confidence,
            min_tracking_confidence=min_tracking_confidence,
            model_complexity=model_complexity,
            smooth_landmarks=True,
            refine_face_landmarks=True,
        )
        self.mp_drawing = mp.solutions.drawing_utils
        self.last_results = None

    def detect(self, image, timestamp):
        """Run Holistic on a BGR frame."""
        image_rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        image_rgb.flags.writeable = False
        results = self.holistic.process(image_rgb)
        self.last_results = results

        height, width = image.shape[:2]
        return observation_from_results(results, timestamp, width / height)

    def draw(self, image):
        """Overlay the most recent landmarks onto a BGR frame in place."""
        results = self.last_results
        if results is None:
            return image

        if results.pose_landmarks:
            self.mp_drawing.draw_landmarks(
                image, results.pose_landmarks, self.mp_holistic.POSE_CONNECTIONS)

        if results.left_hand_landmarks:
            self.mp_drawing.draw_landmarks(
                image, results.left_hand_landmarks, self.mp_holistic.HAND_CONNECTIONS)

        if results.right_hand_landmarks:
            self.mp_drawing.draw_landmarks(
                image, results.right_hand_landmarks, self.mp_holistic.HAND_CONNECTIONS)
        return image

    def close(self):
        self.holistic.close()


class Camera:
    def __init__(self, index=0, width=None, height=None):
        self.cap = cv2.VideoCapture(index)
        if width:
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        if height:
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)

    def read(self):
        success, image = self.cap.read()
        if not success:
            return None
        return image

    def release(self):
        self.cap.release()


class AsyncLandmarker:
    """
    Runs a detector on a background thread, one request at a time.

    Frames submitted while a request is in flight are dropped rather than
    queued, so the caller always works on the freshest image it can get.
    """

    def __init__(self, detector, max_staleness=0.25, clock=time.monotonic):
        self.detector = detector
        self.max_staleness = max_staleness
        self.clock = clock
        self._lock = threading.Lock()
        self._requests = queue.Queue()
        self._pending = False
        self._result = None
        self._running = True
        self._thread = threading.Thread(target=self._worker, name="landmarker", daemon=True)
        self._thread.start()

    @property
    def pending(self):
        with self._lock:
            return self._pending

    def submit(self, image, timestamp):
        """Queue a frame. Returns False when it was dropped."""
        with self._lock:
            if self._pending or not self._running:
                return False
            self._pending = True
        self._requests.put((image, timestamp, self.clock()))
        return True

    def _worker(self):
        while True:
            request = self._requests.get()
            if request is None:
                break

            image, timestamp, submitted_at = request
            try:
                observation = self.detector.detect(image, timestamp)
            except Exception:
                logger.exception("Landmark detection failed for frame at %.3f", timestamp)
                observation = None

            with self._lock:
                self._pending = False
                if observation is not None:
                    self._result = (submitted_at, observation)

    def poll(self):
        """Newest unread observation, or None. Each result is returned once."""
        with self._lock:
            result, self._result = self._result, None
        if result is None:
            return None

        submitted_at, observation = result
        age = self.clock() - submitted_at
        if age > self.max_staleness:
            logger.debug("Dropping stale landmarks (%.0f ms old)", age * 1000)
            return None
        return observation

    def close(self, timeout=1.0):
        with self._lock:
            if not self._running:
                return
            self._running = False
        self._requests.put(None)
        self._thread.join(timeout)
