# certificates.py
# -*- coding: utf-8 -*-
import secrets
import string
from datetime import datetime, timedelta
from io import BytesIO

from reportlab.lib.pagesizes import A4, landscape
from reportlab.pdfgen import canvas
from reportlab.lib.units import cm
from reportlab.lib.colors import Color
from reportlab.lib import colors

from reportlab.graphics.barcode import qr
from reportlab.graphics.shapes import Drawing
from reportlab.graphics import renderPDF

from models import db, Certificate

# aproximação de 30 dias por mês (não é calendário)
DAYS_PER_MONTH = 30

_ID_ALPHABET = string.ascii_uppercase + string.digits


def new_certificate_id(now: datetime) -> str:
    epoch_ms = int(now.timestamp() * 1000)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"CERT-{epoch_ms}-{suffix}"


def compute_expiry(course, acknowledged_at: datetime):
    if not course.is_recurring:
        return None
    months = course.renewal_period_months or 0
    return acknowledged_at + timedelta(days=DAYS_PER_MONTH * months)


def issue_certificate(enrollment, user, course, signature: str, now: datetime) -> Certificate:
    """
    Cria ou substitui o certificado (user, course).
    O certificateId do payload anterior é mantido; não faz commit.
    """
    signature = (signature or "").strip()
    cert = Certificate.query.filter_by(user_id=user.id, course_id=course.id).first()

    previous = (cert.certificate_data or {}) if cert else {}
    certificate_id = previous.get("certificateId") or new_certificate_id(now)
    expires_at = compute_expiry(course, now)

    payload = {
        "score": enrollment.quiz_score,
        "completedAt": now.isoformat(),
        "acknowledgedAt": now.isoformat(),
        "digitalSignature": signature,
        "participantName": user.name or "",
        "courseName": course.title or "",
        "completionDate": now.strftime("%m/%d/%Y"),
        "certificateId": certificate_id,
        "courseType": course.course_type,
        "expiresAt": expires_at.isoformat() if expires_at else None,
    }

    if cert is None:
        cert = Certificate(user_id=user.id, course_id=course.id, issued_at=now)
        db.session.add(cert)

    cert.enrollment_id = enrollment.id
    cert.certificate_data = payload
    cert.digital_signature = signature
    cert.acknowledged_at = now
    return cert


# =========================
# PDF (A4 paisagem)
# =========================
def _multiline_center(c: canvas.Canvas, lines, x, y_start, lh=0.8 * cm, font=("Helvetica", 14)):
    c.setFont(*font)
    y = y_start
    for line in lines:
        c.drawCentredString(x, y, line)
        y -= lh
    return y


def render_certificate_pdf(certificate: Certificate) -> bytes:
    data = certificate.certificate_data or {}
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=landscape(A4))
    w, h = landscape(A4)

    blue = Color(0.145, 0.388, 0.922)  # #2563eb

    # moldura dupla
    c.setStrokeColor(blue)
    c.rect(1.0 * cm, 1.0 * cm, w - 2.0 * cm, h - 2.0 * cm, stroke=1, fill=0)
    c.rect(1.4 * cm, 1.4 * cm, w - 2.8 * cm, h - 2.8 * cm, stroke=1, fill=0)

    c.setFillColor(blue)
    c.setFont("Helvetica-Bold", 16)
    c.drawRightString(w - 2.2 * cm, h - 2.6 * cm, "TrainTrack")

    c.setFont("Helvetica-Bold", 34)
    c.drawCentredString(w / 2, h - 4.6 * cm, "CERTIFICATE OF COMPLETION")
    c.line(7 * cm, h - 5.2 * cm, w - 7 * cm, h - 5.2 * cm)

    c.setFillColor(colors.black)
    c.setFont("Helvetica", 17)
    c.drawCentredString(w / 2, h - 6.6 * cm, "This is to certify that")

    c.setFillColor(blue)
    c.setFont("Helvetica-Bold", 30)
    c.drawCentredString(w / 2, h - 8.0 * cm, data.get("participantName") or "-")

    c.setFillColor(colors.black)
    c.setFont("Helvetica", 17)
    c.drawCentredString(w / 2, h - 9.3 * cm, "has successfully completed the training course")

    c.setFillColor(blue)
    c.setFont("Helvetica-Bold", 22)
    c.drawCentredString(w / 2, h - 10.6 * cm, data.get("courseName") or "-")

    lines = [
        f"Score: {data.get('score', '-')}%",
        f"Completion Date: {data.get('completionDate', '-')}",
    ]
    if data.get("courseType") == "recurring" and data.get("expiresAt"):
        lines.append(f"Certificate Expires: {data['expiresAt'][:10]}")
    c.setFillColor(colors.grey)
    _multiline_center(c, lines, w / 2, h - 12.0 * cm, lh=0.6 * cm, font=("Helvetica", 13))

    # rodapé: ID + assinatura digital
    c.setFont("Helvetica", 11)
    c.drawString(2.2 * cm, 3.2 * cm, f"Certificate ID: {data.get('certificateId', '-')}")
    c.drawString(2.2 * cm, 2.6 * cm, f"Digital Signature: {data.get('digitalSignature', '-')}")
    issued = certificate.issued_at.strftime("%m/%d/%Y") if certificate.issued_at else "-"
    c.drawRightString(w - 5.6 * cm, 3.2 * cm, f"Issued on: {issued}")

    # QR code com os dados básicos do certificado
    qr_code = qr.QrCodeWidget(
        f"TrainTrack certificate {data.get('certificateId', '-')} | "
        f"{data.get('participantName', '-')} | {data.get('courseName', '-')}"
    )
    bounds = qr_code.getBounds()
    qr_w = bounds[2] - bounds[0]
    qr_h = bounds[3] - bounds[1]
    qr_size = 2.8 * cm
    d = Drawing(qr_size, qr_size, transform=[qr_size / qr_w, 0, 0, qr_size / qr_h, 0, 0])
    d.add(qr_code)
    renderPDF.draw(d, c, w - 4.8 * cm, 1.8 * cm)

    c.showPage()
    c.save()
    return buf.getvalue()
