from pydantic import BaseModel, Field
from typing import List, Optional, Union

class Message(BaseModel):
    sender: str = "scammer"  # scammer or user
    text: str = ""  # Message content
    timestamp: Optional[Union[int, str]] = None  # Epoch ms or ISO string

class Metadata(BaseModel):
    channel: Optional[str] = None  # SMS / WhatsApp / Email / Chat
    language: Optional[str] = None  # Language used
    locale: Optional[str] = None  # Country or region

class IncomingRequest(BaseModel):
    sessionId: str = ""  # Unique session identifier
    message: Optional[Message] = None  # The latest incoming message
    conversationHistory: List[Message] = Field(default_factory=list)  # Only used to seed a fresh session
    metadata: Optional[Metadata] = None

class EngagementMetrics(BaseModel):
    mode: str = "SAFE"
    totalMessagesExchanged: int = 0
    agentMessagesSent: int = 0
    scammerMessagesReceived: int = 0
    startedAt: str = ""
    lastMessageAt: str = ""

class IntelligenceReport(BaseModel):
    bankAccounts: List[str] = Field(default_factory=list)
    upiIds: List[str] = Field(default_factory=list)
    phishingLinks: List[str] = Field(default_factory=list)
    phoneNumbers: List[str] = Field(default_factory=list)
    emails: List[str] = Field(default_factory=list)
    employeeIds: List[str] = Field(default_factory=list)
    caseIds: List[str] = Field(default_factory=list)
    orgNames: List[str] = Field(default_factory=list)
    suspiciousKeywords: List[str] = Field(default_factory=list)

class TurnResponse(BaseModel):
    status: str = "success"
    sessionId: str
    scamDetected: bool = False
    scamScore: float = 0.0
    stressScore: float = 0.0
    engagement: EngagementMetrics = Field(default_factory=EngagementMetrics)
    reply: str  # The persona's reply
    extractedIntelligence: IntelligenceReport = Field(default_factory=IntelligenceReport)
    agentNotes: str = ""

class ExtractedIntelligence(BaseModel):
    bankAccounts: List[str] = Field(default_factory=list)
    upiIds: List[str] = Field(default_factory=list)
    phishingLinks: List[str] = Field(default_factory=list)
    phoneNumbers: List[str] = Field(default_factory=list)
    suspiciousKeywords: List[str] = Field(default_factory=list)

class FinalResultPayload(BaseModel):
    sessionId: str
    scamDetected: bool
    totalMessagesExchanged: int
    extractedIntelligence: ExtractedIntelligence
    agentNotes: str
