from typing import Optional, TypedDict


class ProposalDocument(TypedDict, total=False):
    _id: str
    title: str
    company_name: Optional[str]
    # admin who published the proposal and answers its chats
    created_by: str
