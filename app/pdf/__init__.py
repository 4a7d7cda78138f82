# PDF module
from app.pdf.stamper import SimpleSignatureStamper, StampSigner, StampingError, get_stamper
from app.pdf.evidence import EvidenceReportGenerator, get_evidence_generator
from app.pdf.assembler import AssembledEvidence, AssemblyError, EvidenceAssembler, get_evidence_assembler

__all__ = [
    "SimpleSignatureStamper",
    "StampSigner",
    "StampingError",
    "get_stamper",
    "EvidenceReportGenerator",
    "get_evidence_generator",
    "AssembledEvidence",
    "AssemblyError",
    "EvidenceAssembler",
    "get_evidence_assembler",
]
