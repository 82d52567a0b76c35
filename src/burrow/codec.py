"""Structured DNS message values and the dnslib-backed wire codec.

Brief:
  The resolver core never works on dnslib objects directly. Instead it uses
  small frozen dataclasses (Question, AnswerRecord, Message) so that a cached
  message can be handed out as a value: changing a TTL or the header id means
  building a new Message with dataclasses.replace, never mutating the one the
  cache owns.

Inputs:
  - Raw wire bytes (decode) or Message values (encode).

Outputs:
  - Message values (decode) or wire bytes (encode). Both directions raise
    CodecError on malformed input.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Iterable, Tuple

from dnslib import QTYPE, RCODE, RR, DNSHeader, DNSQuestion, DNSRecord


class CodecError(ValueError):
    """
    Brief: Raised when bytes cannot be decoded into a Message or a Message
    cannot be packed back into wire format.

    Inputs:
    - message: Description of the error

    Outputs:
    - Exception instance
    """


@dataclass(frozen=True)
class Question:
    """A single entry of the question section."""

    name: str
    type: int
    cls: int = 1

    @property
    def type_name(self) -> str:
        return str(QTYPE.get(self.type, f"TYPE{self.type}"))


@dataclass(frozen=True)
class AnswerRecord:
    """Brief: A resource record as seen by the resolver core.

    Inputs:
      - name: Owner name (presentation format, trailing dot).
      - type: RR type code.
      - cls: RR class code (for OPT this is the advertised UDP payload size).
      - ttl: Time-to-live in seconds.
      - rdata: Codec-owned rdata object; opaque to the cache and resolver.

    Outputs:
      - AnswerRecord instance.
    """

    name: str
    type: int
    cls: int
    ttl: int
    rdata: Any = None

    def with_ttl(self, ttl: int) -> "AnswerRecord":
        return dataclasses.replace(self, ttl=int(ttl))


@dataclass(frozen=True)
class Message:
    """Brief: Decoded DNS message.

    Inputs:
      - id: 16-bit header id.
      - flags: 16-bit header flags word (QR/opcode/AA/TC/RD/RA/Z/AD/CD/RCODE),
        carried through untouched.
      - questions, answers, authority, additional: tuples of records.

    Outputs:
      - Message instance. Instances are immutable; use with_id() and
        with_answers() to derive modified copies.

    Example:
      >>> q = Message(id=1, questions=(Question("example.com.", 1),))
      >>> q.with_id(7).id
      7
    """

    id: int
    flags: int = 0
    questions: Tuple[Question, ...] = ()
    answers: Tuple[AnswerRecord, ...] = ()
    authority: Tuple[AnswerRecord, ...] = ()
    additional: Tuple[AnswerRecord, ...] = ()

    @property
    def rcode(self) -> int:
        return int(self.flags) & 0x000F

    @property
    def truncated(self) -> bool:
        return bool(int(self.flags) & 0x0200)

    @property
    def rcode_name(self) -> str:
        return str(RCODE.get(self.rcode, f"rcode{self.rcode}"))

    def with_id(self, msg_id: int) -> "Message":
        return dataclasses.replace(self, id=int(msg_id) & 0xFFFF)

    def with_answers(self, answers: Iterable[AnswerRecord]) -> "Message":
        return dataclasses.replace(self, answers=tuple(answers))

    def question_names(self) -> Tuple[str, ...]:
        return tuple(q.name for q in self.questions)


def _records_from(rrs) -> Tuple[AnswerRecord, ...]:
    return tuple(
        AnswerRecord(
            name=str(rr.rname),
            type=int(rr.rtype),
            cls=int(rr.rclass),
            ttl=int(rr.ttl),
            rdata=rr.rdata,
        )
        for rr in (rrs or [])
    )


def _records_to(records: Iterable[AnswerRecord]) -> list:
    return [
        RR(
            rname=rec.name,
            rtype=int(rec.type),
            rclass=int(rec.cls),
            ttl=int(rec.ttl),
            rdata=rec.rdata,
        )
        for rec in records
    ]


def decode(data: bytes) -> Message:
    """
    Brief: Parse wire-format DNS bytes into a Message.

    Inputs:
    - data: raw DNS message bytes

    Outputs:
    - Message

    Raises:
    - CodecError when dnslib cannot parse the payload.

    Example:
        >>> decode(DNSRecord.question("example.com").pack()).questions[0].name
        'example.com.'
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise CodecError(f"cannot decode {type(data).__name__}")
    try:
        record = DNSRecord.parse(bytes(data))
    except Exception as exc:
        raise CodecError(f"malformed DNS message: {exc}") from exc

    return Message(
        id=int(record.header.id),
        flags=int(record.header.bitmap),
        questions=tuple(
            Question(name=str(q.qname), type=int(q.qtype), cls=int(q.qclass))
            for q in record.questions
        ),
        answers=_records_from(record.rr),
        authority=_records_from(record.auth),
        additional=_records_from(record.ar),
    )


def encode(message: Message) -> bytes:
    """
    Brief: Pack a Message back into wire format.

    Inputs:
    - message: Message value

    Outputs:
    - bytes

    Raises:
    - CodecError when the message cannot be packed (bad ttl, bad rdata, ...).
    """
    try:
        record = DNSRecord(
            DNSHeader(id=int(message.id), bitmap=int(message.flags)),
            questions=[
                DNSQuestion(q.name, int(q.type), int(q.cls)) for q in message.questions
            ],
            rr=_records_to(message.answers),
            auth=_records_to(message.authority),
            ar=_records_to(message.additional),
        )
        return record.pack()
    except Exception as exc:
        raise CodecError(f"cannot encode DNS message: {exc}") from exc
