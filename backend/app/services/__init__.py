from app.services.audit import AuditService
from app.services.certificate import CertificateVault
from app.services.evidence import EvidencePageComposer
from app.services.events import EventBus
from app.services.finalization import FinalizationPipeline, FinalizationRunner
from app.services.notification import LoggingNotificationDispatcher
from app.services.pdf_embedder import PdfFieldEmbedder
from app.services.workflow import SigningWorkflow
from app.services.reminders import ReminderSweep
