"""
Amora — Document model registry.

Collection layout (Firestore paths)::

    users/{uid}                             UserProfile
    users/{uid}/swipes/{target_uid}         SwipeDecision
    users/{uid}/photos/{photo_id}           Photo
    usernames/{username}                    username claim
    matches/{pair_id}                       Match
    chats/{pair_id}                         ChatThread
    chats/{pair_id}/messages/{auto_id}      Message
    chats/{pair_id}/webrtc/call             CallSession
    chats/{pair_id}/webrtc/call/offerCandidates/{auto_id}
    chats/{pair_id}/webrtc/call/answerCandidates/{auto_id}
"""

from app.models.call import CallSession, CallState, IceCandidate, SessionDescription, SignalingDescription
from app.models.chat import ChatThread, LastMessage, MemberSnapshot, Message, ThreadSummary
from app.models.match import Match, SwipeDecision, SwipeDirection, SwipeResult
from app.models.profile import Candidate, DiscoveryPreferences, Photo, UserProfile

USERS = "users"
SWIPES = "swipes"
PHOTOS = "photos"
USERNAMES = "usernames"
MATCHES = "matches"
CHATS = "chats"
MESSAGES = "messages"
WEBRTC = "webrtc"
CALL_DOC = "call"
OFFER_CANDIDATES = "offerCandidates"
ANSWER_CANDIDATES = "answerCandidates"

__all__ = [
    "CallSession",
    "CallState",
    "IceCandidate",
    "SessionDescription",
    "SignalingDescription",
    "ChatThread",
    "LastMessage",
    "MemberSnapshot",
    "Message",
    "ThreadSummary",
    "Match",
    "SwipeDecision",
    "SwipeDirection",
    "SwipeResult",
    "Candidate",
    "DiscoveryPreferences",
    "Photo",
    "UserProfile",
]
