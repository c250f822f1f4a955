from pygments.lexer import RegexLexer
from pygments.token import Error, Generic, Keyword, Name, Number, Operator, Punctuation, String, Text, Whitespace

from tritoncloud.utility import RESOURCE_STATES


class TritonTableLexer(RegexLexer):
    """Parse triton table output for highlighting."""

    name = 'triton-table'
    aliases = []
    filenames = ['*.triton']
    tokens = {
        'root': [
            (r'^[A-Z][A-Z_]+(\s+[A-Z][A-Z_]+)*\s*$', Generic.Subheading),       # column headings
            (r'\bfailed\b', Error),
            (r'\b('+r'|'.join(sorted(RESOURCE_STATES))+r')\b', Operator.Word),
            (r'\b[0-9a-f]{8}(-[0-9a-f]{4}){3}-[0-9a-f]{12}\b', Name.Constant),   # uuid
            (r'\b[0-9a-f]{8}\b', Name.Constant),                                # short id
            (r'\b([0-9a-f]{2}:){5}[0-9a-f]{2}\b', Name.Constant),               # mac
            (r'\b\d{1,3}(\.\d{1,3}){3}(/\d{1,2})?\b', Number),                  # ipv4 and cidr
            (r'@[0-9]+(\.[0-9]+)*', Number),                                    # image version
            (r'\b[0-9]+(\.[0-9]+)?[MGT]?\b', Number),                           # sizes and counts
            (r'\b(true|false)\b', Keyword.Constant),
            (r'\b([A-Za-z0-9]+-?)+\b', String),                                 # kebab words
            (r'(\+|-{3,}|\|)', Keyword),                                        # borders
            (r'\*', Name.Builtin),
            (r'\{|\}|,|;|=', Punctuation),
            (r'\s+', Whitespace),
            (r'.', Text),
        ],
    }
